"""模型目录配置。

补全端点背后可路由到多家厂商；客户端只需要知道：

- model_id：请求里发送的模型 ID，例如 "gpt-4o-mini"。
- vendor：实际提供方（仅用于日志/展示）。
- max_tokens：模型上下文上限，请求的 max_tokens 取 min(本值, settings.max_request_tokens)。

新增或下线模型只需修改这里，档位可用模型见 usage/tiers.py。"""

from dataclasses import dataclass
from typing import Dict, Mapping, Optional


@dataclass(frozen=True)
class ModelConfig:
    """单个模型的配置。"""

    model_id: str
    display_name: str
    vendor: str
    max_tokens: int


def _models(*configs: ModelConfig) -> Dict[str, ModelConfig]:
    return {cfg.model_id: cfg for cfg in configs}


MODEL_REGISTRY: Mapping[str, ModelConfig] = _models(
    ModelConfig("gpt-4o", "GPT-4o", "openai", 128000),
    ModelConfig("gpt-4o-mini", "GPT-4o Mini", "openai", 128000),
    ModelConfig("gpt-4.1", "GPT-4.1", "openai", 128000),
    ModelConfig("gpt-4.1-mini", "GPT-4.1 Mini", "openai", 128000),
    ModelConfig("gpt-4.1-nano", "GPT-4.1 Nano", "openai", 128000),
    ModelConfig("o3", "OpenAI o3", "openai", 128000),
    ModelConfig("o3-mini", "OpenAI o3-mini", "openai", 128000),
    ModelConfig("o4-mini", "OpenAI o4-mini", "openai", 128000),
    ModelConfig("claude-3-5-sonnet-20241022", "Claude 3.5 Sonnet", "anthropic", 200000),
    ModelConfig("claude-3-5-haiku-20241022", "Claude 3.5 Haiku", "anthropic", 200000),
    ModelConfig("claude-3-opus-20240229", "Claude 3 Opus", "anthropic", 200000),
    ModelConfig("claude-3-7-sonnet-20250219", "Claude 3.7 Sonnet", "anthropic", 200000),
    ModelConfig("claude-sonnet-4-20250514", "Claude Sonnet 4", "anthropic", 200000),
    ModelConfig("claude-opus-4-20250514", "Claude Opus 4", "anthropic", 200000),
)


def get_model_config(model_id: str) -> Optional[ModelConfig]:
    """根据 ID 获取模型配置，不区分大小写；未知模型返回 None。"""

    key = model_id.lower()
    for k, cfg in MODEL_REGISTRY.items():
        if k.lower() == key:
            return cfg
    return None


def display_name(model_id: str) -> str:
    cfg = get_model_config(model_id)
    return cfg.display_name if cfg else model_id

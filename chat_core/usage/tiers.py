"""订阅档位目录。

档位按从低到高排列；“最低可用档位”查找依赖这个顺序。
"""

from typing import Mapping, Optional

from chat_core.domain.usage import UNLIMITED, UserTier
from chat_core.providers.registry import MODEL_REGISTRY


FREE = UserTier(
    name="free",
    monthly_tokens=35000,
    daily_messages=25,
    allowed_models=frozenset({"gpt-4o-mini", "claude-3-5-haiku-20241022"}),
    warnings=(70, 90),
)

BASIC = UserTier(
    name="basic",
    monthly_tokens=1000000,
    daily_messages=UNLIMITED,
    allowed_models=frozenset(
        {
            "gpt-4o-mini",
            "claude-3-5-haiku-20241022",
            "gpt-4o",
            "gpt-4.1",
            "gpt-4.1-mini",
            "claude-3-5-sonnet-20241022",
            "claude-3-7-sonnet-20250219",
            "claude-sonnet-4-20250514",
        }
    ),
    warnings=(50, 80, 95),
    price="$6/month",
)

PRO = UserTier(
    name="pro",
    monthly_tokens=1500000,
    daily_messages=UNLIMITED,
    allowed_models=frozenset(MODEL_REGISTRY),
    warnings=(50, 80, 95),
    price="$9/month",
)

# 升序；dict 保持插入顺序
TIER_REGISTRY: Mapping[str, UserTier] = {t.name: t for t in (FREE, BASIC, PRO)}

# 找不到任何包含该模型的档位时的默认建议（封闭世界假设）
FALLBACK_REMEDIATION_TIER = "pro"


def get_tier(name: str) -> UserTier:
    """根据名称获取档位，名称不区分大小写。"""

    tier = TIER_REGISTRY.get(name.lower())
    if tier is None:
        raise KeyError(f"Unknown tier: {name!r}")
    return tier


def lowest_tier_for_model(model_id: str) -> str:
    for tier in TIER_REGISTRY.values():
        if tier.allows(model_id):
            return tier.name
    return FALLBACK_REMEDIATION_TIER


def next_tier(name: Optional[str]) -> str:
    """当前档位的下一档；未知档位按 free 处理，最高档返回自身。"""

    names = list(TIER_REGISTRY)
    key = (name or names[0]).lower()
    if key not in TIER_REGISTRY:
        key = names[0]
    idx = names.index(key)
    return names[min(idx + 1, len(names) - 1)]


def warning_level(tier: UserTier, percentage: float) -> Optional[int]:
    """返回已越过的最高提醒阈值，未越过任何阈值时返回 None。"""

    crossed = [w for w in tier.warnings if percentage >= w]
    return crossed[-1] if crossed else None

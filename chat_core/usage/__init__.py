"""用量相关的客户端逻辑。

- tiers: 订阅档位目录与升级建议。
- reset_time: 每日 / 每月配额的重置时间计算与展示。
- gate: 发送前的准入检查（UsageGate）。
- monitor: 定时刷新用量快照的 TierService 缓存实现。
"""

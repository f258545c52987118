"""
行情获取分层架构
  Layer 1 – Rate Limiter : 每个上游数据源一个滑动窗口限流器
  Layer 2 – Cache        : 分级 TTL 缓存（内存 → Redis 镜像），单飞刷新 + 旧数据兜底
  Layer 3 – Acquisition  : Upbit REST 接口
  Layer 4 – Processing   : K 线清洗与快照指标
  Mode / Persistence     : 轮询 / 实时推送状态机，会话状态本地 + 远端持久化
"""

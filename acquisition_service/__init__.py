"""
CryptoWise 行情数据获取服务
独立的自适应行情获取微服务，提供 HTTP 接口

架构分层：
  限流层     (RateLimiter)   → 按上游数据源的滑动窗口限流
  缓存层     (Cache)         → 按 TTL 等级过期，失败时回退旧数据
  模式层     (Mode)          → 轮询 / 实时推送模式自动切换
  持久化层   (Persistence)   → 本地优先、远端兜底的会话状态保存与恢复
"""

__version__ = "1.0.0"

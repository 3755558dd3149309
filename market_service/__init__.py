"""
Market Dashboard 行情数据服务
为仪表盘（资产详情、自选股、持仓估值、市场概览）提供统一的价格解析 HTTP 接口

架构分层：
  数据获取层 (Acquisition)  → 按品种路由到上游行情提供商（限流、退避重试）
  缓存层     (Cache)        → Redis / 进程内 TTL 缓存
  存储层     (Store)        → SQLite / MongoDB 日线与分时 K 线
  处理层     (Processing)   → 数据清洗、排序、去重、合并
  解析层     (Resolution)   → 缓存 → 存储 → 提供商 逐级解析，失败时降级
"""

__version__ = "1.0.0"

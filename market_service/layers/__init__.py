"""
价格解析分层
  Layer 1 – Acquisition  : 上游行情提供商（yfinance / CoinGecko / 合成数据）+ 限流退避
  Layer 2 – Cache        : Redis / 进程内 TTL 缓存
  Store                  : SQLite / MongoDB K 线与资产元数据
  Layer 3 – Processing   : 标准化、排序、去重、合并
  Layer 4 – Resolution   : 缓存 → 存储 → 提供商 逐级解析与降级
"""

"""forcetrunc：SQL Server 强制清空工具（拆除阻塞依赖 → TRUNCATE → 按原样重建）"""

__version__ = "0.1.0"

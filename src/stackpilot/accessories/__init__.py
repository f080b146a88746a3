"""附属服务（数据库、缓存等）的生命周期管理"""

from .manager import AccessoryManager, AccessoryStatus, NOT_DEPLOYED

__all__ = ['AccessoryManager', 'AccessoryStatus', 'NOT_DEPLOYED']

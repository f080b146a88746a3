"""compose 模式的部署历史"""

from .manager import (
    HistoryManager, DeployRecord, HISTORY_IMAGE, DEFAULT_RETENTION,
    container_name, volume_name
)

__all__ = ['HistoryManager', 'DeployRecord', 'HISTORY_IMAGE', 'DEFAULT_RETENTION',
           'container_name', 'volume_name']

"""Docker Swarm 集群初始化和任务查询"""

from .manager import SwarmManager, TaskStatus

__all__ = ['SwarmManager', 'TaskStatus']

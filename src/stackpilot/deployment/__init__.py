"""部署管理层

提供统一的栈部署接口，支持 Docker Swarm 和 Docker Compose 两种后端。

主要组件:
    - DeploymentManager: 部署管理器抽象基类
    - SwarmDeploymentManager: Docker Swarm后端
    - ComposeDeploymentManager: Docker Compose后端（借助部署历史实现回滚）
    - create_deployment_manager: 根据配置选择后端
"""

from .backend import (
    DeploymentManager,
    ServiceStatus,
    ContainerStatus,
    ContainerInfo,
    is_replica_running
)
from .compose_backend import ComposeDeploymentManager
from .compose_content import extract_images, filter_compose_services, require_service, scan_images
from .factory import create_deployment_manager
from .swarm_backend import SwarmDeploymentManager

__all__ = [
    'DeploymentManager',
    'ServiceStatus',
    'ContainerStatus',
    'ContainerInfo',
    'is_replica_running',
    'ComposeDeploymentManager',
    'SwarmDeploymentManager',
    'create_deployment_manager',
    'extract_images',
    'filter_compose_services',
    'require_service',
    'scan_images'
]

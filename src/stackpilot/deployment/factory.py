"""部署管理器工厂

根据配置中的部署模式创建对应的部署管理器，模式在进程生命周期内只选择一次。

典型用法:
    >>> manager = create_deployment_manager(config, executor)
    >>> manager.get_mode()
    'swarm'
"""

from ..config import DeploymentMode
from ..executor import Executor
from ..history import HISTORY_IMAGE
from ..utils.common import setup_module_logger
from .backend import DeploymentManager
from .compose_backend import ComposeDeploymentManager
from .swarm_backend import SwarmDeploymentManager

logger = setup_module_logger("stackpilot.deployment.factory")


def create_deployment_manager(config, executor: Executor) -> DeploymentManager:
    """根据配置创建部署管理器

    未指定模式时使用 swarm。

    Args:
        config: StackConfig实例
        executor: 命令执行器

    Returns:
        DeploymentManager: 对应模式的部署管理器
    """
    mode = config.mode or DeploymentMode.SWARM
    if mode == DeploymentMode.COMPOSE:
        logger.debug(f"Using compose backend for {config.stack}")
        return ComposeDeploymentManager(
            executor, config.stack,
            history_image=config.history_image or HISTORY_IMAGE
        )

    logger.debug(f"Using swarm backend for {config.stack}")
    return SwarmDeploymentManager(executor, config.stack)

"""stackpilot - 在远程主机上部署和管理容器化应用栈

支持 Docker Swarm 和 Docker Compose 两种部署后端，命令可以在本机执行，
也可以通过SSH在远程主机上执行。
"""

__version__ = "0.3.0"

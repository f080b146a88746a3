"""secret加载和 Docker Swarm secret 管理"""

from .manager import Secret, SecretManager, load_secrets, load_secrets_from_env, secret_name

__all__ = ['Secret', 'SecretManager', 'load_secrets', 'load_secrets_from_env', 'secret_name']

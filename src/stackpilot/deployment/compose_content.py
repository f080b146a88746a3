"""compose文件内容处理

提供从compose内容中提取服务镜像映射、只保留单个服务等辅助函数。
优先按YAML文档树处理；内容不是合法YAML时，镜像提取退回到按行扫描。
"""

from typing import Dict, List, Tuple

import yaml

from ..exceptions import ConfigurationError


def _strip_quotes(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value[1:-1]
    return value


def scan_images(compose_content: bytes) -> Dict[str, str]:
    """按行扫描compose内容，提取服务名到镜像的映射

    以冒号结尾的行开启一个块；image: 行归属于它前面最近的、缩进更浅的块。

    Examples:
        >>> scan_images(b"services:\\n  web:\\n    image: nginx\\n")
        {'web': 'nginx'}
    """
    images: Dict[str, str] = {}
    headers: List[Tuple[int, str]] = []

    for line in compose_content.decode('utf-8', errors='replace').splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith('#'):
            continue
        indent = len(line) - len(line.lstrip())

        if stripped.startswith('image:'):
            while headers and headers[-1][0] >= indent:
                headers.pop()
            image = _strip_quotes(stripped[len('image:'):].strip())
            if headers and image:
                images[headers[-1][1]] = image
            continue

        if stripped.endswith(':'):
            while headers and headers[-1][0] >= indent:
                headers.pop()
            headers.append((indent, _strip_quotes(stripped[:-1].strip())))

    return images


def extract_images(compose_content: bytes) -> Dict[str, str]:
    """提取服务名到镜像的映射

    合法YAML时读取 services.<name>.image，否则退回 scan_images。
    """
    try:
        data = yaml.safe_load(compose_content)
    except yaml.YAMLError:
        return scan_images(compose_content)

    if not isinstance(data, dict):
        return scan_images(compose_content)

    services = data.get('services')
    if not isinstance(services, dict):
        return {}

    images = {}
    for name, service in services.items():
        if isinstance(service, dict) and service.get('image'):
            images[str(name)] = str(service['image'])
    return images


def list_services(compose_content: bytes) -> List[str]:
    """返回compose内容中定义的服务名"""
    try:
        data = yaml.safe_load(compose_content)
    except yaml.YAMLError as e:
        raise ConfigurationError(
            f"Invalid compose content: {e}",
            error_code="INVALID_COMPOSE",
            original_exception=e
        )
    if not isinstance(data, dict) or not isinstance(data.get('services'), dict):
        return []
    return [str(name) for name in data['services']]


def require_service(compose_content: bytes, service_name: str) -> None:
    """确认服务在compose内容中有定义

    Raises:
        ConfigurationError: 内容不是合法YAML，或服务不存在
    """
    if service_name not in list_services(compose_content):
        raise ConfigurationError(
            f"Service {service_name} is not defined in the compose file",
            error_code="SERVICE_NOT_DEFINED",
            details={'service': service_name}
        )


def filter_compose_services(compose_content: bytes, service_name: str) -> bytes:
    """只保留 services 中指定的服务，其余顶层字段（networks、volumes等）原样保留

    Raises:
        ConfigurationError: 内容不是合法YAML，或服务不存在
    """
    require_service(compose_content, service_name)
    data = yaml.safe_load(compose_content)
    data['services'] = {
        name: definition for name, definition in data['services'].items()
        if str(name) == service_name
    }
    return yaml.safe_dump(data, sort_keys=False, default_flow_style=False).encode('utf-8')

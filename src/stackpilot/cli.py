"""
stackpilot 命令行入口
在本机或远程主机上部署和管理 Docker Swarm / Docker Compose 应用栈
"""

import functools
import logging
import signal
import sys
from contextlib import contextmanager
from typing import List, Tuple

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .accessories import AccessoryManager
from .config import DeploymentMode, DEFAULT_CONFIG_FILE, load_config, load_compose_file
from .deployment import create_deployment_manager
from .exceptions import (
    StackPilotError, DeploymentError, HealthCheckTimeoutError, StackNotFoundError,
    UnsupportedOperationError, format_exception_chain
)
from .executor import SSHExecutor, create_executor
from .secrets import SecretManager, load_secrets
from .swarm import SwarmManager
from .utils.logger import setup_logging

console = Console()
err_console = Console(stderr=True)

logger = logging.getLogger("stackpilot.cli")

HEALTH_TIMEOUT = 120


def _handle_sigterm(signum, frame):
    """SIGTERM 转换为 SystemExit，让 with 块正常关闭连接"""
    raise SystemExit(128 + signum)


def handle_errors(func):
    """把 StackPilotError 渲染为一行错误信息并以退出码1结束"""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except StackPilotError as e:
            if logging.getLogger().isEnabledFor(logging.DEBUG):
                err_console.print(escape(format_exception_chain(e)))
                logger.debug("Traceback", exc_info=True)
            else:
                err_console.print(f"[red]✗[/red] {escape(str(e))}")
            sys.exit(1)
    return wrapper


@contextmanager
def open_session(ctx):
    """加载配置并建立执行器，退出时保证关闭连接

    Yields:
        Tuple[StackConfig, Executor]
    """
    config = load_config(ctx.obj['config'])
    executor = create_executor(config)
    executor.set_verbose(ctx.obj['verbose'])
    previous_handler = signal.signal(signal.SIGTERM, _handle_sigterm)
    try:
        if executor.is_local():
            console.print("[cyan]→[/cyan] Running locally")
        else:
            console.print(f"[green]✓[/green] Connected to {escape(config.ssh.host)}")
        yield config, executor
    finally:
        signal.signal(signal.SIGTERM, previous_handler)
        executor.close()


def _require_stack(manager) -> None:
    if not manager.exists():
        raise StackNotFoundError(manager.get_stack_name())


def _format_deployed_at(record) -> str:
    """时间戳无法解析时原样显示"""
    deployed = record.deployed_at_time
    if deployed is None:
        return record.deployed_at
    return deployed.strftime("%Y-%m-%d %H:%M:%S %Z").strip()


def _services_table(services, title: str = "Services") -> Table:
    table = Table(title=title)
    table.add_column("Name", style="cyan")
    table.add_column("Mode")
    table.add_column("Replicas", justify="center")
    table.add_column("Image", style="dim")
    for service in services:
        color = "green" if service.running else "red"
        table.add_row(service.name, service.mode, f"[{color}]{service.replicas}[/{color}]",
                      escape(service.image))
    return table


@click.group()
@click.version_option(__version__, prog_name="stackpilot")
@click.option('--config', '-c', 'config_path', default=DEFAULT_CONFIG_FILE, help='Configuration file')
@click.option('--log-level', '-l', default='WARNING',
              type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR']),
              help='Log level')
@click.option('--log-file', default=None, help='Write logs to this file')
@click.option('--verbose', '-v', is_flag=True, help='Log every remote command')
@click.pass_context
def cli(ctx, config_path, log_level, log_file, verbose):
    """在远程主机上部署和管理 Docker Swarm / Docker Compose 应用栈"""
    ctx.ensure_object(dict)
    ctx.obj['config'] = config_path
    ctx.obj['verbose'] = verbose
    setup_logging("INFO" if verbose and log_level == "WARNING" else log_level, log_file=log_file)


@cli.command()
@click.pass_context
@handle_errors
def setup(ctx):
    """准备目标主机：检查Docker，初始化Swarm，创建网络，登录仓库"""
    with open_session(ctx) as (config, executor):
        swarm = SwarmManager(executor, config.stack)

        if not swarm.is_docker_installed():
            raise DeploymentError("Docker is not installed on the target host")
        console.print(f"[green]✓[/green] {escape(swarm.get_docker_version())}")

        if config.mode == DeploymentMode.COMPOSE:
            version = swarm.get_compose_version()
            if version is None:
                raise DeploymentError("docker compose plugin not found",
                                      details={'hint': 'apt install docker-compose-plugin'})
            console.print(f"[green]✓[/green] {escape(version)}")
        else:
            if swarm.is_swarm_initialized():
                console.print("[green]✓[/green] Swarm already initialized")
            else:
                console.print("[yellow]![/yellow] Swarm not initialized, initializing...")
                swarm.init_swarm()
                console.print("[green]✓[/green] Swarm initialized")

            network = f"{config.stack}-network"
            swarm.create_network(network)
            console.print(f"[green]✓[/green] Network {escape(network)} ready")

        if swarm.registry_login(config.registry.url, config.registry.username, config.registry.password):
            console.print(f"[green]✓[/green] Logged in as {escape(config.registry.username)}")

        if config.mode == DeploymentMode.SWARM:
            node_info = swarm.get_node_info()
            if node_info.strip():
                console.print("\n[cyan]→[/cyan] Swarm nodes:")
                console.print(escape(node_info.rstrip()))

    console.print("\n[green]✓[/green] Setup complete! Run 'stackpilot deploy' to deploy your stack.")


def _push_secrets(config, executor) -> None:
    """推送secret，单个失败只提示不中断部署"""
    secrets = load_secrets(config.secrets)
    if not secrets:
        console.print("[yellow]![/yellow] No secret values found in .env or environment")
        return

    manager = SecretManager(executor, config.stack)
    for secret in secrets:
        try:
            manager.create(secret.name, secret.value)
            console.print(f"  [green]✓[/green] {escape(secret.name)}")
        except StackPilotError as e:
            console.print(f"  [red]✗[/red] {escape(secret.name)} ({escape(str(e))})")


@cli.command()
@click.option('--service', '-s', default=None, help='Deploy only this service')
@click.option('--skip-health', is_flag=True, help='Do not wait for services to become healthy')
@click.pass_context
@handle_errors
def deploy(ctx, service, skip_health):
    """部署栈"""
    with open_session(ctx) as (config, executor):
        compose_content = load_compose_file(config.compose_file)
        manager = create_deployment_manager(config, executor)
        console.print(f"[cyan]→[/cyan] Stack: [bold]{escape(config.stack)}[/bold] ({manager.get_mode()} mode)")

        if config.secrets and config.mode == DeploymentMode.SWARM:
            console.print(f"[cyan]→[/cyan] Pushing {len(config.secrets)} secret(s)...")
            _push_secrets(config, executor)

        if config.registry.has_credentials():
            SwarmManager(executor, config.stack).registry_login(
                config.registry.url, config.registry.username, config.registry.password
            )

        with console.status(f"[bold green]Deploying {escape(service or config.stack)}..."):
            manager.deploy(compose_content, service_name=service)
        console.print("[green]✓[/green] Stack deployed")

        if not skip_health:
            try:
                with console.status("[bold green]Waiting for services to become healthy..."):
                    manager.wait_for_healthy(timeout=HEALTH_TIMEOUT)
                console.print("[green]✓[/green] All services are healthy")
            except HealthCheckTimeoutError as e:
                console.print(f"[yellow]![/yellow] {escape(str(e))}")

        console.print(_services_table(manager.list_services()))


@cli.command()
@click.argument('service', required=False)
@click.pass_context
@handle_errors
def rollback(ctx, service):
    """回滚到上一个版本"""
    with open_session(ctx) as (config, executor):
        manager = create_deployment_manager(config, executor)
        _require_stack(manager)
        if not manager.supports_rollback():
            raise UnsupportedOperationError("rollback", manager.get_mode())

        if config.mode == DeploymentMode.COMPOSE:
            if service:
                console.print("[yellow]![/yellow] In compose mode, rollback affects all services")
            manager.rollback_all()
            console.print("[green]✓[/green] Rolled back to the previous deploy")
        else:
            targets = [service] if service else [
                manager.short_service_name(s.name) for s in manager.list_services()
            ]
            if not targets:
                console.print("[yellow]![/yellow] No services to rollback")
                return
            failed = 0
            for name in targets:
                try:
                    manager.rollback_service(name)
                    console.print(f"  [green]✓[/green] {escape(name)}")
                except StackPilotError as e:
                    failed += 1
                    console.print(f"  [red]✗[/red] {escape(name)} ({escape(str(e))})")
            if failed:
                raise DeploymentError(f"{failed} of {len(targets)} service(s) failed to roll back")

        console.print(_services_table(manager.list_services(), title="Services after rollback"))


@cli.command()
@click.argument('service', required=False)
@click.pass_context
@handle_errors
def status(ctx, service):
    """显示栈、服务和附属服务的状态"""
    with open_session(ctx) as (config, executor):
        manager = create_deployment_manager(config, executor)
        if not manager.exists():
            console.print(f"[yellow]![/yellow] Stack {escape(config.stack)} not found. Run 'stackpilot deploy' first.")
            return

        console.print(f"[cyan]→[/cyan] Stack: [bold]{escape(config.stack)}[/bold] ({manager.get_mode()} mode)")

        if service:
            table = Table(title=f"Service {service}")
            if config.mode == DeploymentMode.SWARM:
                table.add_column("Task", style="cyan")
                table.add_column("Node")
                table.add_column("Desired")
                table.add_column("Current")
                table.add_column("Error", style="red")
                for task in SwarmManager(executor, config.stack).get_service_tasks(service):
                    table.add_row(task.name, task.node, task.desired_state,
                                  task.current_state, escape(task.error))
            else:
                table.add_column("Container", style="cyan")
                table.add_column("State")
                for container in manager.get_container_status():
                    if container.service == service:
                        table.add_row(container.name, container.state)
            console.print(table)
            return

        console.print(_services_table(manager.list_services()))

        table = Table(title="Tasks" if config.mode == DeploymentMode.SWARM else "Containers")
        table.add_column("ID", style="dim")
        table.add_column("Name", style="cyan")
        table.add_column("State")
        table.add_column("Error", style="red")
        for container in manager.get_container_status():
            table.add_row(container.id, container.name, container.state, escape(container.error))
        console.print(table)

        if config.accessories:
            accessories = AccessoryManager(executor, config.stack, config.mode)
            table = Table(title="Accessories")
            table.add_column("Name", style="cyan")
            table.add_column("Replicas", justify="center")
            for accessory in accessories.list_all(config.accessories):
                color = "green" if accessory.running else "red"
                table.add_row(accessory.name, f"[{color}]{accessory.replicas}[/{color}]")
            console.print(table)


@cli.command()
@click.argument('service', required=False)
@click.option('--follow', '-f', is_flag=True, help='Follow log output')
@click.option('--since', default='', help='Show logs since timestamp or relative time (e.g. 10m)')
@click.option('--tail', '-n', default=100, show_default=True, help='Number of lines to show')
@click.pass_context
@handle_errors
def logs(ctx, service, follow, since, tail):
    """查看服务日志"""
    with open_session(ctx) as (config, executor):
        manager = create_deployment_manager(config, executor)

        if service and follow:
            console.print(f"[cyan]→[/cyan] Streaming logs for {escape(service)} (Ctrl+C to stop)...")
            manager.stream_service_logs(service, sys.stdout, sys.stderr,
                                        follow=True, since=since, tail=tail)
            return

        if service:
            click.echo(manager.get_service_logs(service, since=since, tail=tail), nl=False)
            return

        services = manager.list_services()
        if not services:
            console.print("[cyan]→[/cyan] No services running")
            return
        for item in services:
            name = manager.short_service_name(item.name)
            console.rule(f"[bold]{escape(name)}")
            click.echo(manager.get_service_logs(name, since=since, tail=tail), nl=False)


@cli.command(name='exec', context_settings={'ignore_unknown_options': True})
@click.argument('service')
@click.argument('command', nargs=-1, type=click.UNPROCESSED)
@click.pass_context
@handle_errors
def exec_command(ctx, service, command):
    """在服务的运行中容器里执行命令，默认打开 sh"""
    command_line = " ".join(command) if command else "sh"

    with open_session(ctx) as (config, executor):
        manager = create_deployment_manager(config, executor)
        info = manager.find_running_container_with_node(service)
        docker_exec = f"docker exec -it {info.container_id} {command_line}"

        current_node = manager.get_current_node_hostname()
        if info.node_name and info.node_name != current_node:
            if not isinstance(executor, SSHExecutor):
                raise DeploymentError(
                    f"Container of {service} runs on node {info.node_name}, "
                    "which requires an SSH connection to reach",
                    details={'node': info.node_name}
                )
            console.print(f"[cyan]→[/cyan] Container runs on {escape(info.node_name)}, connecting through "
                          f"{escape(config.ssh.host)}")
            exit_code = executor.run_interactive_via_host(
                config.node_host(info.node_name), config.node_user(info.node_name), docker_exec
            )
        else:
            exit_code = executor.run_interactive(docker_exec)

    if exit_code != 0:
        sys.exit(exit_code)


def _parse_scale_args(args: Tuple[str, ...]) -> List[Tuple[str, int]]:
    targets = []
    for arg in args:
        name, sep, count = arg.partition("=")
        if not sep or not name or not count.isdigit():
            raise click.BadParameter(f"expected SERVICE=REPLICAS, got '{arg}'", param_hint='SPEC')
        targets.append((name, int(count)))
    return targets


@cli.command()
@click.argument('specs', nargs=-1, required=True, metavar='SERVICE=REPLICAS...')
@click.pass_context
@handle_errors
def scale(ctx, specs):
    """调整服务副本数"""
    targets = _parse_scale_args(specs)
    with open_session(ctx) as (config, executor):
        manager = create_deployment_manager(config, executor)
        if not manager.supports_scale():
            raise UnsupportedOperationError("scale", manager.get_mode())
        for name, replicas in targets:
            manager.scale_service(name, replicas)
            console.print(f"  [green]✓[/green] {escape(name)} → {replicas}")


@cli.command()
@click.option('--limit', '-n', default=10, show_default=True, help='Number of deploys to show')
@click.pass_context
@handle_errors
def history(ctx, limit):
    """显示部署历史（compose 模式）"""
    with open_session(ctx) as (config, executor):
        manager = create_deployment_manager(config, executor)
        if config.mode != DeploymentMode.COMPOSE:
            raise UnsupportedOperationError("history", manager.get_mode())

        records = manager.history.list(limit)
        if not records:
            console.print(f"[cyan]→[/cyan] No deploys recorded for {escape(config.stack)}")
            return

        table = Table(title=f"Deploy history of {config.stack}")
        table.add_column("Offset", justify="right")
        table.add_column("ID", justify="right", style="dim")
        table.add_column("Deployed at")
        table.add_column("Images", style="cyan")
        for offset, record in enumerate(records):
            images = ", ".join(f"{k}={v}" for k, v in sorted(record.images.items()))
            table.add_row(str(-offset), str(record.id), escape(_format_deployed_at(record)), escape(images))
        console.print(table)


@cli.command()
@click.option('--purge-history', is_flag=True, help='Also remove the deploy history container and volume')
@click.confirmation_option(prompt='Are you sure you want to remove the stack?')
@click.pass_context
@handle_errors
def remove(ctx, purge_history):
    """删除栈"""
    with open_session(ctx) as (config, executor):
        manager = create_deployment_manager(config, executor)
        manager.remove()
        console.print(f"[green]✓[/green] Stack {escape(config.stack)} removed")
        if purge_history and config.mode == DeploymentMode.COMPOSE:
            manager.history.remove()
            console.print("[green]✓[/green] Deploy history removed")


@cli.command()
@click.argument('action', required=False, type=click.Choice(['start', 'stop', 'restart']))
@click.argument('name', required=False)
@click.pass_context
@handle_errors
def accessory(ctx, action, name):
    """管理附属服务；不带参数时显示状态。NAME 可以是 all"""
    with open_session(ctx) as (config, executor):
        if not config.accessories:
            console.print("[yellow]![/yellow] No accessories defined in the configuration")
            return
        manager = AccessoryManager(executor, config.stack, config.mode)

        if action is None:
            table = Table(title=f"Accessories of {config.stack}")
            table.add_column("Name", style="cyan")
            table.add_column("Replicas", justify="center")
            for status in manager.list_all(config.accessories):
                color = "green" if status.running else "red"
                table.add_row(status.name, f"[{color}]{status.replicas}[/{color}]")
            console.print(table)
            return

        if not name:
            raise click.UsageError("NAME is required (an accessory name or 'all')")
        names = config.accessories if name == "all" else [name]
        operation = getattr(manager, action)
        for item in names:
            operation(item)
            console.print(f"  [green]✓[/green] {action} {escape(item)}")


@cli.command()
@click.argument('action', required=False, default='list', type=click.Choice(['push', 'list']))
@click.pass_context
@handle_errors
def secrets(ctx, action):
    """推送或列出 swarm secret"""
    with open_session(ctx) as (config, executor):
        if config.mode != DeploymentMode.SWARM:
            raise UnsupportedOperationError("secrets", config.mode.value)

        if action == 'push':
            if not config.secrets:
                console.print("[yellow]![/yellow] No secrets defined in the configuration")
                return
            _push_secrets(config, executor)
            return

        names = SecretManager(executor, config.stack).list()
        if not names:
            console.print(f"[cyan]→[/cyan] No secrets found for stack {escape(config.stack)}")
            return
        for secret_name in names:
            console.print(f"  • {escape(secret_name)}")


def main():
    cli(obj={})


if __name__ == '__main__':
    main()

"""
Instance commands: run, stop, list, show and logs.
"""

import argparse
import ipaddress
import logging
from typing import Dict, List, Optional, Tuple

from ..exceptions import ValidationError
from ..models import (
    ResourceKind, Instance, InstanceDetail, InstanceLogMessage, LogType,
    InstanceInitState, NetworkDetail
)
from ..output import draw_table, draw_info_section
from . import CommandContext, short_id

logger = logging.getLogger(__name__)

ACTIVE_STATE = "active"
MIN_MEMORY_MB = 128
MAX_MEMORY_MB = 131072
MIN_VCPUS = 1
MAX_VCPUS = 32
DEFAULT_STOP_TIMEOUT_MS = 5000
MAX_STOP_TIMEOUT_MS = 600000
DEFAULT_REGION = "dev"


def parse_memory_mb(value: str) -> int:
    """
    Parse a memory size such as ``512``, ``1024M`` or ``2G`` into megabytes.

    Raises:
        ValidationError: malformed value or outside 128M..128G
    """
    text = value.strip()
    if not text:
        raise ValidationError("Memory value cannot be empty", field_name='memory')

    unit = 'M'
    number = text
    if not text[-1].isdigit():
        unit = text[-1].upper()
        number = text[:-1]

    if not number.isdigit():
        raise ValidationError(
            "Memory value must be a number followed by an optional unit (M/G)",
            field_name='memory'
        )
    if unit not in ('M', 'G'):
        raise ValidationError(f"Invalid memory unit: {unit}", field_name='memory')

    mb = int(number) * (1024 if unit == 'G' else 1)
    if not MIN_MEMORY_MB <= mb <= MAX_MEMORY_MB:
        raise ValidationError(f"Memory must be between 128M and 128G ({mb} MB)", field_name='memory')
    return mb


def parse_env_vars(values: Optional[List[str]]) -> Optional[Dict[str, str]]:
    """Parse ``KEY=VALUE`` pairs; the value may itself contain '='."""
    if not values:
        return None
    env = {}
    for item in values:
        key, sep, val = item.partition('=')
        if not sep or not key:
            raise ValidationError(
                f"Invalid environment variable format: {item}. Expected KEY=VALUE format.",
                field_name='env'
            )
        env[key] = val
    return env


def parse_network_spec(value: str) -> Tuple[Optional[str], str]:
    """
    Split ``[ip]@network`` into the optional address and the network reference.

    A value without '@' is a bare network reference.
    """
    ip, sep, network = value.partition('@')
    if not sep:
        ip, network = '', value
    if not network:
        raise ValidationError(
            f"Invalid network format: '{value}'. Expected format: [ip]@<network>",
            field_name='network'
        )
    if ip:
        try:
            ipaddress.IPv4Address(ip)
        except ValueError:
            raise ValidationError(f"Invalid IPv4 address '{ip}'", field_name='network')
        return ip, network
    return None, network


def next_free_ip(cidr: str, used_ips: List[str]) -> str:
    """Return the first host address of ``cidr`` not present in ``used_ips``."""
    try:
        network = ipaddress.IPv4Network(cidr, strict=False)
    except ValueError:
        raise ValidationError(f"Invalid CIDR format: {cidr}")

    used = set()
    for ip in used_ips:
        try:
            used.add(ipaddress.IPv4Address(ip))
        except ValueError:
            logger.debug(f"Ignoring unparsable address in network: {ip}")

    for host in network.hosts():
        if host not in used:
            return str(host)
    raise ValidationError(f"No free address left in network {cidr}")


def register(subparsers) -> None:
    parser = subparsers.add_parser('instance', aliases=['vm', 'instances'], help='Manage instances')
    parser.set_defaults(handler=handle_list, include_stopped=False)
    commands = parser.add_subparsers(dest='instance_command', metavar='COMMAND')

    run_parser = commands.add_parser('run', help='Run a new instance with a container image')
    run_parser.add_argument('container_image', help="Container image to run, e.g. 'nginx:latest'")
    run_parser.add_argument('-c', '--vcpus', type=int, default=1, dest='vcpu_count',
                            help='Number of vCPUs [1-32] (default: 1)')
    run_parser.add_argument('-m', '--memory', default='1024M',
                            help='Memory in MB (M) or GB (G) [128M-128G] (default: 1024M)')
    run_parser.add_argument('-e', '--env', action='append', metavar='KEY=VALUE',
                            help='Environment variable, may be repeated')
    run_parser.add_argument('-n', '--name', help='Optional name for the instance')
    run_parser.add_argument('--network', metavar='[IP]@NETWORK',
                            help='Join a network; the address is assigned automatically when omitted')
    run_parser.add_argument('args', nargs=argparse.REMAINDER, help='Arguments passed to the container')
    run_parser.set_defaults(handler=handle_run)

    stop_parser = commands.add_parser('stop', aliases=['rm'], help='Stop an instance')
    stop_parser.add_argument('instance', help='Instance id, id prefix or name')
    stop_parser.add_argument('-t', '--timeout', type=int, default=DEFAULT_STOP_TIMEOUT_MS,
                             help='Graceful shutdown timeout in milliseconds (default: 5000)')
    stop_parser.set_defaults(handler=handle_stop)

    list_parser = commands.add_parser('list', aliases=['ls'], help='List instances')
    list_parser.add_argument('-a', '--include-stopped', action='store_true',
                             help='Include stopped instances')
    list_parser.set_defaults(handler=handle_list)

    show_parser = commands.add_parser('show', aliases=['get', 'info'], help='Show instance details')
    show_parser.add_argument('instance', help='Instance id, id prefix or name')
    show_parser.set_defaults(handler=handle_show)

    logs_parser = commands.add_parser('logs', aliases=['log'], help='Stream instance logs')
    logs_parser.add_argument('instance', help='Instance id, id prefix or name')
    logs_parser.set_defaults(handler=handle_logs)


async def _resolve_network(ctx: CommandContext, spec: str) -> Dict[str, str]:
    ip, reference = parse_network_spec(spec)
    network_id = await ctx.resolver.resolve(ResourceKind.NETWORK, reference)
    if ip is None:
        network = NetworkDetail.from_dict(await ctx.api_client.get(ResourceKind.NETWORK, network_id))
        ip = next_free_ip(network.ipv4_cidr, [i.internal_ip for i in network.instances])
        logger.info(f"Assigned address {ip} in network {network.name}")
    return {'network_id': network_id, 'instance_ip': ip}


def build_run_payload(args, network: Optional[Dict[str, str]] = None) -> Dict:
    """Validate run arguments and build the instance creation payload."""
    if not MIN_VCPUS <= args.vcpu_count <= MAX_VCPUS:
        raise ValidationError(f"vCPU count must be between 1 and 32, got {args.vcpu_count}", field_name='vcpus')

    container_args = list(args.args or [])
    if container_args and container_args[0] == '--':
        container_args = container_args[1:]

    payload = {
        'region': DEFAULT_REGION,
        'vcpu_ratio': 1.0,
        'vcpu_count': args.vcpu_count,
        'memory_mb': parse_memory_mb(args.memory),
        'name': args.name,
        'configuration': {
            'container_image': args.container_image,
            'args': container_args or None,
            'env': parse_env_vars(args.env),
        },
    }
    if network:
        payload['network'] = network
    return payload


async def handle_run(args, ctx: CommandContext) -> int:
    """Start an instance and follow its logs until the stream closes."""
    payload = build_run_payload(args)
    if args.network:
        payload['network'] = await _resolve_network(ctx, args.network)

    response = await ctx.api_client.create(ResourceKind.INSTANCE, payload)
    instance_id = str(response.get('id', ''))
    print(f"Instance {short_id(instance_id)} started successfully", file=ctx.err)
    print(instance_id, file=ctx.out)

    await _follow_logs(ctx, instance_id)
    return 0


async def handle_stop(args, ctx: CommandContext) -> int:
    if not 0 <= args.timeout <= MAX_STOP_TIMEOUT_MS:
        raise ValidationError(
            f"Timeout must be between 0 and {MAX_STOP_TIMEOUT_MS} ms, got {args.timeout}",
            field_name='timeout'
        )
    instance_id = await ctx.resolver.resolve(ResourceKind.INSTANCE, args.instance)
    await ctx.api_client.delete(ResourceKind.INSTANCE, instance_id, {'timeout_ms': args.timeout})
    print(f"Successfully stopped instance {instance_id}", file=ctx.out)
    return 0


async def handle_list(args, ctx: CommandContext) -> int:
    """List instances; only active ones unless --include-stopped is given."""
    instances = [Instance.from_dict(item) for item in await ctx.api_client.list(ResourceKind.INSTANCE)]
    if not args.include_stopped:
        instances = [i for i in instances if i.state == ACTIVE_STATE]

    if not instances:
        if args.include_stopped:
            print("No instances found. How about running one?", file=ctx.err)
        else:
            print("No running instances found.", file=ctx.err)
        return 0

    rows = [
        [i.created_at or '', i.id, i.name or '', i.container_image, i.state]
        for i in instances
    ]
    draw_table(f"Instances ({len(rows)})", ['CREATED AT', 'ID', 'NAME', 'IMAGE', 'STATE'], rows, file=ctx.out)
    return 0


async def handle_show(args, ctx: CommandContext) -> int:
    instance_id = await ctx.resolver.resolve(ResourceKind.INSTANCE, args.instance)
    instance = InstanceDetail.from_dict(
        await ctx.api_client.get(ResourceKind.INSTANCE, instance_id, params={'include_service_targets': 'true'})
    )

    fields = [
        ('Name', instance.name or '<unnamed>'),
        ('ID', instance.id),
        ('State', instance.state),
        ('Image', instance.container_image),
        ('Node ID', instance.node_id or ''),
        ('Created', instance.created_at or ''),
    ]
    if instance.exit_code is not None:
        fields.append(('Exit Code', str(instance.exit_code)))
    if instance.exit_reason:
        fields.append(('Exit Reason', instance.exit_reason))
    if instance.network_id:
        fields.append(('Network ID', instance.network_id))
    if instance.network_ip:
        fields.append(('Network IP', instance.network_ip))
    draw_info_section(f"Instance {instance.id}", fields, file=ctx.out)

    if instance.service_targets is not None:
        if instance.service_targets:
            draw_table(
                f"Service Targets ({len(instance.service_targets)})",
                ['SERVICE NAME', 'SERVICE ID', 'TYPE', 'PORT'],
                [[t.service_name, t.service_id, t.service_type, str(t.instance_port)]
                 for t in instance.service_targets],
                file=ctx.out
            )
        else:
            print("No service targets configured for this instance", file=ctx.out)
    return 0


async def handle_logs(args, ctx: CommandContext) -> int:
    instance_id = await ctx.resolver.resolve(ResourceKind.INSTANCE, args.instance)
    await _follow_logs(ctx, instance_id)
    return 0


async def _follow_logs(ctx: CommandContext, instance_id: str) -> None:
    async for message in ctx.api_client.stream_logs(instance_id):
        display_log_message(message, ctx)


_STATE_LABELS = {
    InstanceInitState.ONLINE: "Instance is online",
    InstanceInitState.PULLING_CONTAINER_IMAGE: "Pulling container image...",
    InstanceInitState.EXECUTING_CONTAINER: "Executing container...",
}


def display_log_message(message: InstanceLogMessage, ctx: CommandContext) -> None:
    """Write one log message: container stdout to stdout, everything else to stderr."""
    text = message.message or ''
    if message.log_type == LogType.STDOUT:
        print(text, file=ctx.out)
    elif message.log_type == LogType.STDERR:
        print(text, file=ctx.err)
    elif message.log_type == LogType.SYSTEM:
        print(f"[Instance] {message.timestamp.strftime('%Y-%m-%d %H:%M:%S')} - {text}", file=ctx.err)
    elif message.state is not None:
        print(_STATE_LABELS[message.state], file=ctx.err)

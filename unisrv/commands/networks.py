"""
Private network commands: new, show, delete and list.
"""

import ipaddress
import logging

from ..exceptions import ValidationError
from ..models import ResourceKind, Network, NetworkDetail
from ..output import draw_table, draw_info_section
from . import CommandContext, short_id

logger = logging.getLogger(__name__)

DEFAULT_CIDR = "10.0.0.0/8"


def validate_cidr(cidr: str) -> str:
    """Check that ``cidr`` is an IPv4 network such as 10.0.0.0/24."""
    try:
        ipaddress.IPv4Network(cidr)
    except ValueError as e:
        raise ValidationError(
            f"Invalid IPv4 CIDR format '{cidr}': {e}. Expected format: x.x.x.x/x (e.g., 10.0.0.0/24)",
            field_name='ipv4_cidr'
        )
    return cidr


def register(subparsers) -> None:
    parser = subparsers.add_parser('network', aliases=['net', 'networks'], help='Manage private networks')
    parser.set_defaults(handler=handle_list)
    commands = parser.add_subparsers(dest='network_command', metavar='COMMAND')

    new_parser = commands.add_parser('new', help='Create a new internal network')
    new_parser.add_argument('name', help='Name of the network')
    new_parser.add_argument('ipv4_cidr', nargs='?', default=DEFAULT_CIDR,
                            help=f'IPv4 CIDR block (default: {DEFAULT_CIDR})')
    new_parser.set_defaults(handler=handle_new)

    show_parser = commands.add_parser('show', aliases=['get'], help='Show network details')
    show_parser.add_argument('network', help='Network id, id prefix or name')
    show_parser.set_defaults(handler=handle_show)

    delete_parser = commands.add_parser('delete', aliases=['rm'], help='Delete a network')
    delete_parser.add_argument('network', help='Network id, id prefix or name')
    delete_parser.set_defaults(handler=handle_delete)

    list_parser = commands.add_parser('list', aliases=['ls'], help='List networks')
    list_parser.set_defaults(handler=handle_list)


async def handle_new(args, ctx: CommandContext) -> int:
    cidr = validate_cidr(args.ipv4_cidr)
    await ctx.api_client.create(ResourceKind.NETWORK, {'name': args.name, 'ipv4_cidr': cidr})
    print(f"Network '{args.name}' created successfully with CIDR {cidr}", file=ctx.out)
    return 0


async def handle_show(args, ctx: CommandContext) -> int:
    network_id = await ctx.resolver.resolve(ResourceKind.NETWORK, args.network)
    network = NetworkDetail.from_dict(await ctx.api_client.get(ResourceKind.NETWORK, network_id))

    draw_info_section(
        f"Network {network.id}",
        [('Name', network.name), ('CIDR', network.ipv4_cidr), ('Created', network.created_at or '')],
        file=ctx.out
    )
    if network.instances:
        draw_table(
            f"Instances ({len(network.instances)})",
            ['INSTANCE ID', 'INTERNAL IP'],
            [[i.id, i.internal_ip] for i in network.instances],
            file=ctx.out
        )
    else:
        print("No instances attached to this network", file=ctx.out)
    return 0


async def handle_delete(args, ctx: CommandContext) -> int:
    network_id = await ctx.resolver.resolve(ResourceKind.NETWORK, args.network)
    await ctx.api_client.delete(ResourceKind.NETWORK, network_id)
    print(f"Network {network_id} deleted", file=ctx.out)
    return 0


async def handle_list(args, ctx: CommandContext) -> int:
    networks = [
        Network.from_dict(item)
        for item in await ctx.api_client.list(ResourceKind.NETWORK, params={'include_instance_count': 'true'})
    ]
    if not networks:
        print("No networks found.", file=ctx.err)
        return 0
    draw_table(
        "User-defined Networks",
        ['ID', 'NAME', 'CIDR', 'INSTANCES'],
        [[short_id(n.id), n.name, n.ipv4_cidr, str(n.instance_count or 0)] for n in networks],
        file=ctx.out
    )
    return 0

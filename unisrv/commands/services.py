"""
HTTP service commands: list, show, new, delete, targets and locations.
"""

import argparse
import logging
from typing import List, Optional, Tuple

from ..exceptions import NotFound, ValidationError, ErrorCode
from ..models import (
    ResourceKind, ResourceReference, Service, ServiceDetail, ServiceTarget,
    HTTPServiceConfig, HTTPLocation
)
from ..output import draw_table, draw_info_section
from ..resolver import match_candidates
from . import CommandContext, short_id

logger = logging.getLogger(__name__)

DEFAULT_DOMAIN = "unisrv.dev"
DEFAULT_TARGET_GROUP = "default"
DEFAULT_REGION = "dev"

INSTANCE_TARGET_TYPES = ('instance', 'inst')
URL_TARGET_TYPE = 'url'


def as_domain(host: str) -> str:
    """Expand a bare subdomain to ``<sub>.unisrv.dev``; dotted hosts are kept."""
    host = host.strip()
    if not host:
        raise ValidationError("Host cannot be empty", field_name='host')
    if '.' in host:
        return host
    return f"{host}.{DEFAULT_DOMAIN}"


def default_service_config(allow_http: bool = False) -> HTTPServiceConfig:
    """Configuration for a new service: '/' routed to the default instance group."""
    return HTTPServiceConfig(
        locations=[HTTPLocation(path='/', target={'type': 'instance', 'group': DEFAULT_TARGET_GROUP})],
        allow_http=allow_http
    )


def parse_location_target(target_type: str, value: Optional[str] = None) -> dict:
    """Build a location target from the CLI type and optional value."""
    if target_type in INSTANCE_TARGET_TYPES:
        return {'type': 'instance', 'group': value or DEFAULT_TARGET_GROUP}
    if target_type == URL_TARGET_TYPE:
        if not value:
            raise ValidationError("URL is required for url target type", field_name='target_value')
        return {'type': 'url', 'url': value}
    raise ValidationError(
        f"Invalid target type '{target_type}'. Must be 'instance', 'inst', or 'url'",
        field_name='target_type'
    )


def add_location(config: HTTPServiceConfig, location: HTTPLocation) -> HTTPServiceConfig:
    """Append a location; a duplicate path is rejected."""
    if any(existing.path == location.path for existing in config.locations):
        raise ValidationError(
            f"Location with path '{location.path}' already exists. Delete it first or use a different path.",
            field_name='path',
            error_code=ErrorCode.VALIDATION_CONFLICT
        )
    config.locations.append(location)
    return config


def remove_location(config: HTTPServiceConfig, path: str) -> HTTPServiceConfig:
    remaining = [location for location in config.locations if location.path != path]
    if len(remaining) == len(config.locations):
        raise NotFound(f"Location with path '{path}' not found", kind='location', reference=path)
    config.locations = remaining
    return config


def describe_location_target(target: dict) -> str:
    if target.get('type') == 'url':
        return f"url {target.get('url', '')}"
    if target.get('type') == 'instance':
        return f"instance group {target.get('group') or DEFAULT_TARGET_GROUP}"
    return str(target.get('type', 'unknown'))


def parse_target_spec(value: str) -> Tuple[str, int]:
    """Split ``INSTANCE:PORT`` into the instance reference and port."""
    instance, sep, port = value.rpartition(':')
    if not sep or not instance or not port:
        raise ValidationError("Invalid instance target format. Expected INSTANCE:PORT", field_name='target')
    try:
        port_number = int(port)
    except ValueError:
        raise ValidationError(f"Invalid port '{port}'", field_name='target')
    if not 1 <= port_number <= 65535:
        raise ValidationError(f"Port must be between 1 and 65535, got {port_number}", field_name='target')
    return instance, port_number


def register(subparsers) -> None:
    parser = subparsers.add_parser('service', aliases=['srv', 'services'], help='Manage HTTP services')
    parser.set_defaults(handler=handle_list)
    commands = parser.add_subparsers(dest='service_command', metavar='COMMAND')

    list_parser = commands.add_parser('list', aliases=['ls'], help='List services')
    list_parser.set_defaults(handler=handle_list)

    show_parser = commands.add_parser('show', aliases=['get', 'info'], help='Show service details')
    show_parser.add_argument('service', help='Service id, id prefix or name')
    show_parser.set_defaults(handler=handle_show)

    delete_parser = commands.add_parser('delete', aliases=['rm'], help='Delete a service')
    delete_parser.add_argument('service', help='Service id, id prefix or name')
    delete_parser.set_defaults(handler=handle_delete)

    new_parser = commands.add_parser('new', help='Create a new HTTP service')
    new_parser.add_argument('name', help='Name of the service')
    new_parser.add_argument('host', help=f'Domain, or subdomain of {DEFAULT_DOMAIN}')
    new_parser.add_argument('--allow-http', action='store_true', help='Allow plain HTTP connections')
    new_parser.set_defaults(handler=handle_new)

    target_parser = commands.add_parser('target', help='Manage service targets')
    target_commands = target_parser.add_subparsers(dest='target_command', metavar='COMMAND')
    target_commands.required = True

    target_add = target_commands.add_parser('add', help='Add an instance port as target')
    target_add.add_argument('service', help='Service id, id prefix or name')
    target_add.add_argument('target', metavar='INSTANCE:PORT', help='Instance reference and internal port')
    target_add.add_argument('-g', '--group', help=f'Target group (server default: {DEFAULT_TARGET_GROUP})')
    target_add.set_defaults(handler=handle_target_add)

    target_delete = target_commands.add_parser('delete', aliases=['rm'], help='Delete a target')
    target_delete.add_argument('service', help='Service id, id prefix or name')
    target_delete.add_argument('target_id', nargs='?', help='Target id or prefix (prompted when omitted)')
    target_delete.set_defaults(handler=handle_target_delete)

    location_parser = commands.add_parser(
        'location', aliases=['loc'], help='Manage service locations',
        usage='%(prog)s [SERVICE | list SERVICE | add SERVICE PATH TYPE [VALUE] | delete SERVICE PATH]'
    )
    location_parser.add_argument('location_args', nargs=argparse.REMAINDER, help=argparse.SUPPRESS)
    location_parser.set_defaults(handler=handle_location)


def _location_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='unisrv service location')
    commands = parser.add_subparsers(dest='location_command', metavar='COMMAND')
    commands.required = True

    list_parser = commands.add_parser('list', aliases=['ls'], help='List locations of a service')
    list_parser.add_argument('service')
    list_parser.set_defaults(location_handler=handle_location_list)

    add_parser = commands.add_parser('add', help='Add a location to a service')
    add_parser.add_argument('service')
    add_parser.add_argument('path', help='Path of the location, e.g. /api')
    add_parser.add_argument('target_type', help="'instance', 'inst', or 'url'")
    add_parser.add_argument('target_value', nargs='?', help='Group name for instance, URL for url')
    add_parser.add_argument('--override-404', help='Custom 404 override path')
    add_parser.set_defaults(location_handler=handle_location_add)

    delete_parser = commands.add_parser('delete', aliases=['rm'], help='Delete a location')
    delete_parser.add_argument('service')
    delete_parser.add_argument('path')
    delete_parser.set_defaults(location_handler=handle_location_delete)
    return parser


LOCATION_COMMANDS = ('list', 'ls', 'add', 'delete', 'rm')


async def handle_location(args, ctx: CommandContext) -> int:
    """Dispatch ``service location``; a lone service reference lists its locations."""
    words = list(args.location_args)
    if len(words) == 1 and words[0] not in LOCATION_COMMANDS:
        words = ['list'] + words
    location_args = _location_parser().parse_args(words)
    return await location_args.location_handler(location_args, ctx)


async def _fetch_service(ctx: CommandContext, reference: str) -> ServiceDetail:
    service_id = await ctx.resolver.resolve(ResourceKind.SERVICE, reference)
    return ServiceDetail.from_dict(await ctx.api_client.get(ResourceKind.SERVICE, service_id))


async def handle_list(args, ctx: CommandContext) -> int:
    services = [Service.from_dict(item) for item in await ctx.api_client.list(ResourceKind.SERVICE)]
    if not services:
        print("No services found.", file=ctx.err)
        return 0
    draw_table(
        "Services",
        ['ID', 'NAME', 'TYPE'],
        [[short_id(s.id), s.name, s.service_type] for s in services],
        file=ctx.out
    )
    return 0


async def handle_show(args, ctx: CommandContext) -> int:
    service = await _fetch_service(ctx, args.service)
    draw_info_section(
        f"Service {service.id}",
        [('Name', service.name), ('Type', service.service_type), ('Created', service.created_at or '')],
        file=ctx.out
    )
    if service.providers:
        draw_table(
            f"Providers ({len(service.providers)})",
            ['ID', 'ROUTE ADDRESS'],
            [[p.id, p.route_address] for p in service.providers],
            file=ctx.out
        )
    if service.targets:
        draw_table(
            f"Targets ({len(service.targets)})",
            ['ID', 'INSTANCE ID', 'PORT', 'GROUP'],
            [[t.id, t.instance_id, str(t.instance_port or ''), t.target_group or '-'] for t in service.targets],
            file=ctx.out
        )
    else:
        print("No targets configured for this service", file=ctx.out)
    return 0


async def handle_delete(args, ctx: CommandContext) -> int:
    service_id = await ctx.resolver.resolve(ResourceKind.SERVICE, args.service)
    await ctx.api_client.delete(ResourceKind.SERVICE, service_id)
    print(f"Service {service_id} deleted", file=ctx.out)
    return 0


async def handle_new(args, ctx: CommandContext) -> int:
    host = as_domain(args.host)
    payload = {
        'region': DEFAULT_REGION,
        'name': args.name,
        'host': host,
        'configuration': default_service_config(args.allow_http).to_dict(),
        'instance_targets': [],
    }
    response = await ctx.api_client.create(ResourceKind.SERVICE, payload)
    service_id = str(response.get('service_id', ''))
    print(f"Service created with ID: {service_id}", file=ctx.out)
    print(f"Host: https://{host}", file=ctx.out)
    print(f"\nUse 'unisrv srv target add {service_id}' to add instance targets", file=ctx.out)
    print(f"Use 'unisrv srv location add {service_id}' to configure routing", file=ctx.out)
    return 0


async def handle_target_add(args, ctx: CommandContext) -> int:
    instance_ref, port = parse_target_spec(args.target)
    service_id = await ctx.resolver.resolve(ResourceKind.SERVICE, args.service)
    instance_id = await ctx.resolver.resolve(ResourceKind.INSTANCE, instance_ref)

    target_id = await ctx.api_client.add_service_target(service_id, instance_id, port, args.group)
    group = f" [group: {args.group}]" if args.group else ""
    print(
        f"Target {short_id(target_id)} added to service {short_id(service_id)} "
        f"({short_id(instance_id)}:{port}{group})",
        file=ctx.out
    )
    return 0


def _select_target(ctx: CommandContext, targets: List[ServiceTarget]) -> str:
    """Ask the user to pick a target by number."""
    if not targets:
        raise NotFound("No targets configured for this service", kind='target')

    for index, target in enumerate(targets, start=1):
        print(
            f"{index:>3}) {short_id(target.id)}  instance:{short_id(target.instance_id)}  "
            f"port:{target.instance_port if target.instance_port is not None else '-'}  "
            f"group:{target.target_group or '-'}",
            file=ctx.err
        )
    answer = ctx.prompt(f"Select target to delete [1-{len(targets)}]: ").strip()
    if not answer.isdigit() or not 1 <= int(answer) <= len(targets):
        raise ValidationError(f"Invalid selection '{answer}'", field_name='target')
    return targets[int(answer) - 1].id


async def handle_target_delete(args, ctx: CommandContext) -> int:
    service = await _fetch_service(ctx, args.service)

    if args.target_id is None:
        target_id = _select_target(ctx, service.targets)
    else:
        reference = ResourceReference.classify(args.target_id)
        if reference.is_full_identifier:
            target_id = reference.raw
        else:
            target_id = match_candidates(reference.raw, [t.to_summary() for t in service.targets], 'target')

    await ctx.api_client.delete_service_target(service.id, target_id)
    print(f"Target {short_id(target_id)} deleted from service {short_id(service.id)}", file=ctx.out)
    return 0


async def handle_location_list(args, ctx: CommandContext) -> int:
    service = await _fetch_service(ctx, args.service)
    draw_table(
        f"Locations of {service.name} ({len(service.configuration.locations)})",
        ['PATH', 'TARGET', 'OVERRIDE 404'],
        [[loc.path, describe_location_target(loc.target), loc.override_404 or '-']
         for loc in service.configuration.locations],
        file=ctx.out
    )
    print(f"HTTP allowed: {'yes' if service.configuration.allow_http else 'no'}", file=ctx.out)
    return 0


async def handle_location_add(args, ctx: CommandContext) -> int:
    location = HTTPLocation(
        path=args.path,
        target=parse_location_target(args.target_type, args.target_value),
        override_404=args.override_404
    )
    service = await _fetch_service(ctx, args.service)
    config = add_location(service.configuration, location)
    await ctx.api_client.update(ResourceKind.SERVICE, service.id, config.to_dict())
    print(f"Location {args.path} added to service {short_id(service.id)}", file=ctx.out)
    return 0


async def handle_location_delete(args, ctx: CommandContext) -> int:
    service = await _fetch_service(ctx, args.service)
    config = remove_location(service.configuration, args.path)
    await ctx.api_client.update(ResourceKind.SERVICE, service.id, config.to_dict())
    print(f"Location {args.path} deleted from service {short_id(service.id)}", file=ctx.out)
    return 0

"""
CatRender command line.

Usage:
    catrender render [--products a,b] [--catalogues cat1,cat2]
    catrender resume
    catrender status
    catrender catalogues list
    catrender catalogues add "Retail" [--folder Retail]
    catrender catalogues update cat17... --label "Retail EU" [--folder RetailEU]
    catrender catalogues delete cat17...
    catrender products import products.json
    catrender products list
    catrender products shelve|restore|purge <id>
"""

import argparse
import json
import logging
import sys
from pathlib import Path

from catrender.errors import CatRenderError

logger = logging.getLogger(__name__)


def _split(value):
    return [v.strip() for v in value.split(",") if v.strip()] if value else None


def _print_event(event):
    kind = event.type.value
    if kind == "progress":
        print(f"  product {event.current_product_index}/{event.total_products} "
              f"({event.percentage}%)", flush=True)
    elif kind == "complete":
        print(f"Done: {event.message}")
    elif kind == "error":
        print(f"FAILED: {event.message}", file=sys.stderr)
        if event.guidance:
            print(f"  {event.guidance}", file=sys.stderr)
    elif kind == "cancelled":
        print(event.message)


def _run_to_end(services, started) -> int:
    if started is None:
        print("Nothing to render.")
        return 0
    try:
        result = services.controller.wait()
    except KeyboardInterrupt:
        services.controller.cancel()
        result = services.controller.wait()
    if result is None:
        return 1
    return 0 if result.error is None else 2


# ── Subcommand handlers ─────────────────────────────────

def cmd_render(args, services) -> int:
    products = _split(args.products) or services.products.ids()
    catalogues = _split(args.catalogues) or services.registry.ids()
    services.channel.subscribe(_print_event)
    job = services.controller.start(products, catalogues)
    print(f"Rendering {len(job.product_ids)} products x {len(job.catalogue_ids)} catalogues")
    return _run_to_end(services, job)


def cmd_resume(args, services) -> int:
    services.channel.subscribe(_print_event)
    job = services.supervisor.resume()
    if job is not None:
        print(f"Resuming at unit {job.cursor}/{job.total_units}")
    return _run_to_end(services, job)


def cmd_status(args, services) -> int:
    job = services.supervisor.check_resumable()
    print(f"Products:   {len(services.products.ids())} ({len(services.products.list_shelf())} shelved)")
    print(f"Catalogues: {', '.join(services.registry.ids())}")
    if job is None:
        print("Checkpoint: none")
    else:
        print(f"Checkpoint: {job.cursor}/{job.total_units} units ({job.percentage()}%), "
              f"{job.rendered} rendered, {job.skipped} skipped")
    return 0


def cmd_catalogues(args, services) -> int:
    registry = services.registry
    if args.action == "list":
        for c in registry.list_active():
            flag = " (default)" if c.is_default else ""
            print(f"{c.id:<18} {c.label:<20} folder={c.folder} price={c.price_field}{flag}")
    elif args.action == "add":
        c = registry.add(args.value, folder=args.folder)
        print(f"Added {c.id} ({c.label}, folder {c.folder})")
    elif args.action == "update":
        changes = {k: v for k, v in (("label", args.label), ("folder", args.folder)) if v}
        c = registry.update(args.value, **changes)
        if registry.last_rename is not None:
            registry.last_rename.join()
        print(f"Updated {c.id} ({c.label}, folder {c.folder})")
    elif args.action == "delete":
        registry.delete(args.value)
        print(f"Deleted {args.value}")
    return 0


def cmd_products(args, services) -> int:
    from catrender.catalogue.schema import Product

    repo = services.products
    if args.action == "import":
        with open(args.value, "r", encoding="utf-8") as f:
            records = json.load(f)
        products = [Product.model_validate(r) for r in records]
        repo.save_all(products)
        if services.registry.ensure_legacy_resell(products):
            print("Created legacy Resell catalogue")
        print(f"Imported {len(products)} products")
    elif args.action == "list":
        for p in repo.list_products():
            print(f"{p.id:<16} {p.name}")
    elif args.action == "shelve":
        print("Shelved" if repo.move_to_shelf(args.value) else "Not found")
    elif args.action == "restore":
        print("Restored" if repo.restore_from_shelf(args.value) else "Not on shelf")
    elif args.action == "purge":
        removed = repo.hard_delete(args.value)
        print(f"Deleted {args.value} ({removed} cards removed)")
    return 0


# ── Main ────────────────────────────────────────────────

def main(argv=None):
    parser = argparse.ArgumentParser(
        prog='catrender',
        description='Render catalogue product cards'
    )
    parser.add_argument('--data-dir', help='Override storage.data_dir')
    parser.add_argument('--delay-ms', type=float, help='Pause between units')
    parser.add_argument('-v', '--verbose', action='store_true')
    sub = parser.add_subparsers(dest='command', required=True)

    # Render
    p = sub.add_parser('render', help='Render products x catalogues')
    p.add_argument('--products', help='Comma-separated product ids (default: all)')
    p.add_argument('--catalogues', help='Comma-separated catalogue ids (default: all)')

    # Resume / status
    sub.add_parser('resume', help='Resume an interrupted render')
    sub.add_parser('status', help='Show checkpoint and counts')

    # Catalogues
    p = sub.add_parser('catalogues', help='Catalogue management')
    p.add_argument('action', choices=['list', 'add', 'update', 'delete'])
    p.add_argument('value', nargs='?', help='Label (add) or catalogue id')
    p.add_argument('--label')
    p.add_argument('--folder')

    # Products
    p = sub.add_parser('products', help='Product management')
    p.add_argument('action', choices=['import', 'list', 'shelve', 'restore', 'purge'])
    p.add_argument('value', nargs='?', help='JSON file (import) or product id')

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )

    if args.command in ('catalogues', 'products') and args.action not in ('list',) and not args.value:
        parser.error(f"{args.command} {args.action} needs a value")

    from catrender.app import build_services
    services = build_services(
        data_dir=Path(args.data_dir) if args.data_dir else None,
        delay_ms=args.delay_ms,
    )

    handlers = {
        'render': cmd_render,
        'resume': cmd_resume,
        'status': cmd_status,
        'catalogues': cmd_catalogues,
        'products': cmd_products,
    }

    try:
        code = handlers[args.command](args, services)
    except CatRenderError as e:
        logger.error(f"{args.command} failed: {e}")
        code = 1
    finally:
        services.close()
    sys.exit(code)


if __name__ == '__main__':
    main()

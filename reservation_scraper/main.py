"""
Main CLI entry point for the reservation scraper.
Supports multiple modes: search, resolve, check
"""
import argparse
import asyncio
import logging
import sys
from typing import List, Dict, Any

from rich.console import Console
from rich.logging import RichHandler
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from .aggregator import StreamingAggregator, CancelToken
from .availability import ReservationChecker
from .cache import CacheStore
from .config import ScraperConfig, PLATFORMS, load_config_from_env, load_config_from_file
from .fetch import Fetcher
from .models import AvailabilityQuery
from .platforms import build_scrapers
from .resolver import IdentityResolver
from .session import ConfigurationError

console = Console()


def setup_logging(config: ScraperConfig):
    """Setup structured logging"""
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper()),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[
            RichHandler(console=console, rich_tracebacks=True),
            logging.FileHandler(config.log_file) if config.log_file else logging.NullHandler()
        ]
    )


async def run_search(args, config: ScraperConfig, fetcher: Fetcher, caches: CacheStore) -> List[Dict[str, Any]]:
    """Stream a multi-date search and collect every restaurant seen"""
    scrapers = build_scrapers(config, fetcher, caches)
    resolver = IdentityResolver(config, fetcher, caches) if args.discover else None
    aggregator = StreamingAggregator(config, scrapers, resolver)

    query = AvailabilityQuery(
        city=args.city,
        dates=[d.strip() for d in args.dates.split(',') if d.strip()],
        party_size=args.party_size,
        meal=args.meal,
        area=args.area,
        platform=args.platform,
        refresh=args.refresh,
    )

    restaurants: Dict[str, Dict[str, Any]] = {}
    cancel = CancelToken()
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console
    ) as progress:
        task = progress.add_task(f"Searching {query.platform}...", total=len(query.dates))

        async for event in aggregator.stream(query, cancel):
            if event['type'] == 'progress':
                progress.update(task, description=f"{event['date']}: page {event['page']} ({event['count']} found)")
            elif event['type'] == 'date':
                console.print(f"[green]✓ {event['date']}: {event['count']} restaurants[/green]")
                for restaurant in event['restaurants']:
                    key = restaurant.get('url') or restaurant['normalized_name']
                    restaurants.setdefault(key, restaurant)
                progress.advance(task)
            elif event['type'] == 'platform-update':
                found = ", ".join(p for p, link in event['links'].items() if link)
                console.print(f"[cyan]↻ {event['name']}: {found}[/cyan]")
                if event['key'] in restaurants:
                    restaurants[event['key']]['platform_links'].update(event['links'])
            elif event['type'] == 'done':
                console.print(f"[bold]{event['totalRestaurants']} unique restaurants[/bold]")
            elif event['type'] == 'error':
                console.print(f"[red]✗ {event['message']}[/red]")

    return list(restaurants.values())


def print_restaurants(restaurants: List[Dict[str, Any]], limit: int):
    table = Table(title="Restaurants")
    table.add_column("Name", style="cyan")
    table.add_column("Score", style="green")
    table.add_column("Area")
    table.add_column("Dates")
    table.add_column("Links")

    ranked = sorted(restaurants, key=lambda r: r.get('score') or 0, reverse=True)
    for restaurant in ranked[:limit]:
        dates = [e['date'][5:] for e in restaurant.get('availability', [])
                 if e['status'] in ('available', 'limited')]
        links = [p for p, link in (restaurant.get('platform_links') or {}).items() if link]
        table.add_row(
            restaurant['name'],
            f"{restaurant['score']:.2f}" if restaurant.get('score') else "-",
            restaurant.get('area') or "",
            " ".join(dates),
            ", ".join(links),
        )
    console.print(table)


async def run_resolve(args, config: ScraperConfig, fetcher: Fetcher, caches: CacheStore):
    resolver = IdentityResolver(config, fetcher, caches)
    reference = {
        'name': args.name,
        'city': args.city,
        'area': args.area,
        'phone': args.phone,
    }
    with console.status(f"Resolving {args.name}..."):
        identity = await resolver.resolve(reference)
        score = await resolver.lookup_score(args.name, args.city)

    table = Table(title=f"{args.name} ({identity.stage})")
    table.add_column("Platform", style="cyan")
    table.add_column("Link", style="green")
    for platform, link in identity.links.items():
        table.add_row(platform, link or "[dim]not found[/dim]")
    table.add_row("tabelog", score.get('tabelog_url') or "[dim]not found[/dim]")
    table.add_row("score", str(score.get('score') or "-"))
    console.print(table)


async def run_check(args, config: ScraperConfig, fetcher: Fetcher, caches: CacheStore):
    checker = ReservationChecker(config, fetcher, caches)
    with console.status(f"Checking {args.url}..."):
        result = await checker.check(args.url, refresh=args.refresh, party_size=args.party_size)

    if result.error:
        console.print(f"[red]✗ Check failed: {result.error}[/red]")
        return
    if not result.has_online_reservation:
        console.print("[yellow]No online reservation on Tabelog[/yellow]")
        return

    table = Table(title="Reservation Calendar")
    table.add_column("Date", style="cyan")
    table.add_column("Status", style="green")
    for entry in result.dates:
        table.add_row(entry.date, entry.status.value)
    console.print(table)
    if result.reservation_url:
        console.print(f"Book at: {result.reservation_url}")


async def main_async(args):
    """Main async function"""
    # Load configuration
    config = load_config_from_file(args.config) if args.config else load_config_from_env()

    # Override with CLI arguments
    if args.headless is not None:
        config.headless = args.headless
    if args.data_dir:
        config.data_dir = args.data_dir
    if args.debug:
        config.debug_mode = True
        config.log_level = "DEBUG"

    setup_logging(config)

    console.print("[bold green]Reservation Scraper Starting[/bold green]")
    console.print(f"Mode: {args.mode}")
    console.print(f"Cache: {config.data_dir}")

    caches = CacheStore(config)

    async with Fetcher(config) as fetcher:
        if args.mode == 'search':
            if not args.dates:
                console.print("[red]Error: --dates required for search mode[/red]")
                sys.exit(1)
            restaurants = await run_search(args, config, fetcher, caches)
            print_restaurants(restaurants, args.limit)

        elif args.mode == 'resolve':
            if not args.name:
                console.print("[red]Error: --name required for resolve mode[/red]")
                sys.exit(1)
            await run_resolve(args, config, fetcher, caches)

        elif args.mode == 'check':
            if not args.url:
                console.print("[red]Error: --url required for check mode[/red]")
                sys.exit(1)
            await run_check(args, config, fetcher, caches)


def main():
    """CLI entry point"""
    parser = argparse.ArgumentParser(
        description="Restaurant reservation availability across Tabelog, Omakase, TableCheck and TableAll",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    parser.add_argument(
        '--mode',
        choices=['search', 'resolve', 'check'],
        required=True,
        help='search: availability by date, resolve: cross-platform links, check: Tabelog calendar'
    )
    parser.add_argument('--city', default='tokyo', help='City (default: tokyo)')
    parser.add_argument('--dates', help='Comma separated ISO dates, e.g. 2025-05-10,2025-05-11')
    parser.add_argument('--meal', choices=['lunch', 'dinner'], help='Meal filter')
    parser.add_argument('--party-size', type=int, default=2, help='Party size (default: 2)')
    parser.add_argument('--area', help='Neighborhood, e.g. Ginza')
    parser.add_argument('--platform', choices=PLATFORMS, default='tabelog', help='Platform to search')
    parser.add_argument('--discover', action='store_true',
                        help='Look up cross-platform links for top rated results after the search')
    parser.add_argument('--name', help='Restaurant name (resolve mode)')
    parser.add_argument('--phone', help='Known phone number (resolve mode)')
    parser.add_argument('--url', help='Tabelog restaurant URL (check mode)')
    parser.add_argument('--limit', type=int, default=30, help='Rows to show in the summary table')
    parser.add_argument('--refresh', action='store_true', help='Ignore cached results')
    parser.add_argument('--data-dir', help='Cache directory (default: ./data)')
    parser.add_argument('--config', help='Path to YAML configuration file')
    parser.add_argument('--headless', action='store_true', default=None, help='Run browser in headless mode (default)')
    parser.add_argument('--no-headless', dest='headless', action='store_false', help='Run browser with GUI')
    parser.add_argument('--debug', action='store_true', help='Enable debug mode with verbose logging')

    args = parser.parse_args()

    # Run async main
    try:
        asyncio.run(main_async(args))
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        sys.exit(1)
    except ConfigurationError as e:
        console.print(f"\n[red]Configuration error: {e}[/red]")
        sys.exit(1)
    except Exception as e:
        console.print(f"\n[red]Fatal error: {e}[/red]")
        if args.debug:
            import traceback
            console.print(traceback.format_exc())
        sys.exit(1)


if __name__ == '__main__':
    main()

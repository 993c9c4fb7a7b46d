import asyncio
import sys

from dataclasses import dataclass
from datetime import date
from typing import Annotated

import cappa
import granian

from cappa.output import error_format
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table
from rich.text import Text
from watchfiles import PythonFilter

from backend import __version__
from backend.core.conf import settings
from backend.core.log import setup_logging
from backend.database.db import create_tables, drop_tables

console = Console()

output_help = '\nFor more information, try "[cyan]--help[/]"'


class CustomReloadFilter(PythonFilter):
    """Custom reload filter"""

    def __init__(self) -> None:
        super().__init__(extra_extensions=['.json', '.yaml', '.yml'])


def _parse_date(value: str | None) -> date | None:
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise cappa.Exit(f'Invalid date {value!r}, expected YYYY-MM-DD', code=1)


def _services(as_of: date | None):
    from backend.src.billing.services import build_billing_services, get_billing_services
    from backend.src.billing.shared.clock import FixedClock

    if as_of is None:
        return get_billing_services()
    return build_billing_services(clock=FixedClock.on(as_of))


async def init(rebuild: bool) -> None:  # noqa: FBT001
    panel_content = Text()
    panel_content.append('Database configuration', style='bold green')
    panel_content.append('\n\n  • Type: ')
    panel_content.append(f'{settings.DATABASE_TYPE}', style='yellow')
    panel_content.append('\n  • Database: ')
    panel_content.append(
        settings.DATABASE_SQLITE_PATH if settings.DATABASE_TYPE == 'sqlite' else settings.DATABASE_SCHEMA,
        style='yellow',
    )
    panel_content.append('\n\nStripe configuration', style='bold green')
    panel_content.append('\n\n  • Price: ')
    panel_content.append(settings.STRIPE_PRICE_ID or 'not set', style='yellow' if settings.STRIPE_PRICE_ID else 'red')
    panel_content.append('\n  • Webhook secret: ')
    panel_content.append('set' if settings.STRIPE_WEBHOOK_SECRET else 'not set', style='yellow')

    console.print(Panel(panel_content, title=f'school-billing v{__version__} initialization', border_style='cyan', padding=(1, 2)))

    if rebuild:
        ok = Prompt.ask('Are you sure to drop and rebuild the billing tables?', choices=['y', 'n'], default='n')
        if ok.lower() != 'y':
            console.print('Initialization cancelled', style='yellow')
            return

    console.print('Initializing...', style='white')
    try:
        if rebuild:
            console.print('Dropping database tables', style='white')
            await drop_tables()
        console.print('Creating database tables', style='white')
        await create_tables()
        console.print('Initialization completed', style='green')
        console.print('\nTry [bold cyan]school-billing run[/bold cyan] to start the service')
    except Exception as e:
        raise cappa.Exit(f'Initialization failed: {e}', code=1)


def run(host: str, port: int, reload: bool, workers: int) -> None:  # noqa: FBT001
    url = f'http://{host}:{port}'
    docs_url = url + settings.FASTAPI_DOCS_URL

    panel_content = Text()
    panel_content.append('Python version:', style='bold cyan')
    panel_content.append(f'{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}', style='white')

    panel_content.append('\nAPI request address: ', style='bold cyan')
    panel_content.append(f'{url}{settings.FASTAPI_API_V1_PATH}/billing', style='blue')

    panel_content.append('\n\nEnvironment mode: ', style='bold green')
    env_style = 'yellow' if settings.ENVIRONMENT == 'dev' else 'green'
    panel_content.append(f'{settings.ENVIRONMENT.upper()}', style=env_style)

    panel_content.append('\nDaily billing cron: ', style='bold green')
    if settings.BILLING_CRON_ENABLED:
        panel_content.append(
            f'{settings.BILLING_CRON_HOUR:02d}:{settings.BILLING_CRON_MINUTE:02d} {settings.BILLING_CRON_TIMEZONE}',
            style='yellow',
        )
    else:
        panel_content.append('disabled (HTTP trigger only)', style='white')

    if settings.ENVIRONMENT == 'dev':
        panel_content.append(f'\n\n📖 Swagger docs: {docs_url}', style='bold magenta')

    console.print(Panel(panel_content, title=f'school-billing v{__version__}', border_style='purple', padding=(1, 2)))
    granian.Granian(
        target='backend.main:app',
        interface='asgi',
        address=host,
        port=port,
        reload=not reload,
        reload_filter=CustomReloadFilter,
        workers=workers,
    ).serve()


async def billing_run(as_of: date | None) -> None:
    services = _services(as_of)
    result = await services.scheduler.run_daily()

    table = Table(show_header=True, header_style='bold magenta')
    table.add_column('Org', style='cyan', no_wrap=True)
    table.add_column('Phase', style='green')
    table.add_column('Outcome', style='yellow')
    table.add_column('Error', style='red')
    for item in result.items:
        table.add_row(
            item.org_id,
            item.phase,
            item.outcome or '',
            f"{item.error['error']}: {item.error['message']}" if item.error else '',
        )
    console.print(table)

    style = {'success': 'bold green', 'partial_failure': 'bold yellow', 'failure': 'bold red'}[result.status.value]
    console.print(f'Billing run for {result.run_date}: {result.status.value}', style=style)
    if result.exit_code:
        raise cappa.Exit(code=result.exit_code)


async def billing_preview(as_of: date | None) -> None:
    services = _services(as_of)
    preview = await services.scheduler.preview()

    table = Table(
        title=f"Quantity refresh on {preview['run_date']} (anniversary {preview['anniversary_date']})",
        show_header=True,
        header_style='bold magenta',
    )
    table.add_column('Org', style='cyan', no_wrap=True)
    table.add_column('Day', justify='right')
    table.add_column('Status', style='green')
    table.add_column('Last billed', justify='right')
    table.add_column('Students', justify='right', style='yellow')
    table.add_column(f"Est. ({preview['currency']})", justify='right')
    for row in preview['refresh']:
        table.add_row(
            row['org_id'],
            str(row['anniversary_day']),
            row['subscription_status'],
            '' if row['last_billed_student_count'] is None else str(row['last_billed_student_count']),
            str(row['active_students']),
            f"{row['estimated_amount'] / 100:.2f}",
        )
    console.print(table)

    past_due = Table(title='Past due escalation', show_header=True, header_style='bold magenta')
    past_due.add_column('Org', style='cyan', no_wrap=True)
    past_due.add_column('Failures', justify='right', style='red')
    past_due.add_column('Retries', justify='right')
    past_due.add_column('First failure')
    for row in preview['past_due']:
        past_due.add_row(
            row['org_id'],
            str(row['payment_failure_count']),
            str(row['payment_retry_count']),
            row['first_payment_failure_at'] or '',
        )
    console.print(past_due)
    if preview['pending_cancel']:
        console.print(f"Cancel retry: {', '.join(preview['pending_cancel'])}", style='yellow')


async def billing_org(org_id: str) -> None:
    from backend.src.billing.shared.exceptions import BillingError

    services = _services(None)
    try:
        overview = await services.orchestrator.describe(org_id)
    except BillingError as e:
        raise cappa.Exit(e.message, code=1)

    org = overview['org']
    record = overview['record'] or {}
    panel_content = Text()
    panel_content.append(f"{org['name']}", style='bold cyan')
    panel_content.append(f"\n\n  • Org status: {org['status']}")
    panel_content.append(f"\n  • Subscription: {record.get('subscription_status', 'no billing record')}")
    panel_content.append(f"\n  • Anniversary day: {record.get('anniversary_day', '-')}")
    panel_content.append(f"\n  • Active students: {overview['active_students']}")
    panel_content.append(f"\n  • Last billed: {record.get('last_billed_student_count', '-')} "
                         f"for {record.get('last_billed_period', '-')}")
    panel_content.append(f"\n  • Payment failures: {record.get('payment_failure_count', 0)}")
    panel_content.append(
        f"\n  • Estimated next charge: {overview['estimated_amount'] / 100:.2f} {overview['currency'].upper()}",
        style='yellow',
    )
    console.print(Panel(panel_content, title=org_id, border_style='cyan', padding=(1, 2)))


@cappa.command(help='Create the billing tables', default_long=True)
@dataclass
class Init:
    rebuild: Annotated[
        bool,
        cappa.Arg(default=False, help='Drop existing tables first (asks for confirmation)'),
    ]

    async def __call__(self) -> None:
        await init(self.rebuild)


@cappa.command(help='Run API service', default_long=True)
@dataclass
class Run:
    host: Annotated[
        str,
        cappa.Arg(
            default='127.0.0.1',
            help='Host IP to serve on; use `127.0.0.1` for local development and `0.0.0.0` for public access',
        ),
    ]
    port: Annotated[
        int,
        cappa.Arg(default=8000, help='Port to serve on'),
    ]
    no_reload: Annotated[
        bool,
        cappa.Arg(default=False, help='Disable auto reload on file changes'),
    ]
    workers: Annotated[
        int,
        cappa.Arg(default=1, help='Number of worker processes, use together with `--no-reload`'),
    ]

    def __call__(self) -> None:
        run(host=self.host, port=self.port, reload=self.no_reload, workers=self.workers)


@cappa.command(name='run', help='Run the daily billing batch once', default_long=True)
@dataclass
class BillingRun:
    date: Annotated[
        str | None,
        cappa.Arg(default=None, help='Run as of this day (YYYY-MM-DD) instead of today'),
    ] = None

    async def __call__(self) -> None:
        await billing_run(_parse_date(self.date))


@cappa.command(name='preview', help='Show which orgs the daily batch would touch', default_long=True)
@dataclass
class BillingPreview:
    date: Annotated[
        str | None,
        cappa.Arg(default=None, help='Preview as of this day (YYYY-MM-DD)'),
    ] = None

    async def __call__(self) -> None:
        await billing_preview(_parse_date(self.date))


@cappa.command(name='org', help='Show one org\'s billing state', default_long=True)
@dataclass
class BillingOrg:
    org_id: Annotated[str, cappa.Arg(help='Org ID')]

    async def __call__(self) -> None:
        await billing_org(self.org_id)


@cappa.command(help='Platform billing operations')
@dataclass
class Billing:
    subcmd: cappa.Subcommands[BillingRun | BillingPreview | BillingOrg]


@cappa.command(help='School platform billing command line interface', default_long=True)
@dataclass
class BillingCli:
    subcmd: cappa.Subcommands[Init | Run | Billing | None] = None

    def __call__(self) -> None:
        console.print('Try [bold cyan]school-billing --help[/bold cyan] for available commands')


def main() -> None:
    setup_logging()
    output = cappa.Output(error_format=f'{error_format}\n{output_help}')
    asyncio.run(cappa.invoke_async(BillingCli, version=__version__, output=output))

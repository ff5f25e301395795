"""
Command-line interface for the VPN session core
"""

import argparse
import sys
import time
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from rich.progress import (
    Progress, SpinnerColumn, TextColumn
)
from rich.prompt import Confirm
from rich import box

from ..core.authenticator import CertificateAuthenticator
from ..core.config_manager import ConfigManager
from ..core.errors import VPNSessionError
from ..core.negotiator import ProtocolNegotiator
from ..core.probes import ProbeSet
from ..core.refresher import SessionRefresher
from ..core.server_selector import ServerSelector
from ..core.storage import (
    AuthenticationStorage, FileCredentialStore, FileServerDirectory,
)
from ..core.telemetry import TelemetryBuffer, TelemetryService
from ..providers.api_client import VpnApiClient
from ..utils.logging_setup import (
    get_logger, set_logging_level, setup_file_logging,
)

console = Console()
logger = get_logger(__name__)


class VPNSessionCLI:
    """Command-line access to the session services"""

    def __init__(self, config: Optional[ConfigManager] = None):
        self.config = config or ConfigManager()
        self.credential_store = FileCredentialStore(
            Path(self.config.get('storage.credentials_file'))
        )
        self.server_directory = FileServerDirectory(
            Path(self.config.get('storage.servers_file'))
        )
        self.auth_storage = AuthenticationStorage(
            Path(self.config.get('storage.authentication_file'))
        )
        self.api = VpnApiClient(
            self.config.get('api.base_url'),
            self.credential_store,
            timeout=self.config.get('api.timeout', 30),
            app_version=self.config.get('api.app_version'),
        )
        self.selector = ServerSelector(self.server_directory)

    def _telemetry(self) -> TelemetryService:
        return TelemetryService(
            self.api, self.credential_store,
            TelemetryBuffer(
                self.config.get('telemetry.queue_path'),
                max_tries=int(self.config.get('telemetry.max_tries', 10)),
            ),
            enabled=bool(self.config.get('telemetry.enabled', True)),
            use_buffer=bool(self.config.get('telemetry.use_buffer', True)),
        )

    def refresh(self):
        """Refresh servers, account and client configuration"""
        refresher = SessionRefresher(
            self.api, self.credential_store, self.server_directory
        )
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            transient=True,
        ) as progress:
            task = progress.add_task("Refreshing session data...", total=None)
            success = refresher.refresh_data()
            if success:
                refresher.refresh_streaming_services()
            progress.update(task, completed=1)

        if success:
            servers = self.server_directory.fetch()
            console.print(f"[green]✓ Refreshed {len(servers)} servers[/green]")
            location = refresher.properties.user_location
            if location:
                console.print(f"Your IP: {location.ip} ({location.country}, "
                              f"{location.isp})")
        else:
            console.print("[red]✗ Refresh failed, see the log for details[/red]")

    def list_servers(self, country: Optional[str] = None):
        """List known servers"""
        servers = self.selector.find_servers(country)
        if not servers:
            console.print("[yellow]No servers found. Run 'refresh' first.[/yellow]")
            return

        table = Table(title="Available VPN Servers", box=box.ROUNDED)
        table.add_column("ID", style="dim")
        table.add_column("Name", style="cyan")
        table.add_column("Country", style="white")
        table.add_column("City", style="white")
        table.add_column("Tier", style="magenta")
        table.add_column("Load", style="green")
        table.add_column("Features", style="white")
        table.add_column("Status", style="white")

        for server in servers:
            load_style = (
                "green" if server.load < 50
                else "yellow" if server.load < 80 else "red"
            )
            table.add_row(
                server.id,
                server.name,
                server.country_code,
                server.city or "",
                str(int(server.tier)),
                f"[{load_style}]{server.load}%[/{load_style}]",
                ", ".join(server.features),
                "[red]maintenance[/red]" if server.under_maintenance
                else "online",
            )

        console.print(table)
        console.print(f"\nTotal servers: {len(servers)}")

    def probe(self, server_id: str):
        """Probe every protocol on a server and show the negotiated choice"""
        server = self.server_directory.find(server_id)
        if server is None:
            console.print(f"[red]Unknown server {server_id}[/red]")
            return

        probe_set = ProbeSet.from_config(self.config)
        negotiator = ProtocolNegotiator(
            probe_set,
            fallback_protocol=self.config.fallback_protocol(),
            fallback_port=int(self.config.get('fallback.port', 51820)),
        )
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            transient=True,
        ) as progress:
            task = progress.add_task(f"Probing {server.name}...", total=None)
            results = probe_set.run(server)
            progress.update(task, completed=1)

        table = Table(title=f"Protocol availability: {server.name}",
                      box=box.SIMPLE)
        table.add_column("Protocol", style="cyan")
        table.add_column("Priority", style="white")
        table.add_column("Available", style="white")
        table.add_column("Ports", style="green")
        for protocol in sorted(results, key=lambda p: p.priority):
            availability = results[protocol]
            table.add_row(
                protocol.value,
                str(protocol.priority),
                "✓" if availability.is_available else "✗",
                ", ".join(str(p) for p in availability.ports),
            )
        console.print(table)

        choice = negotiator.choose(results)
        suffix = " (fallback)" if choice.is_fallback else ""
        console.print(Panel(
            f"{choice.protocol.value} on ports "
            f"{', '.join(str(p) for p in choice.ports)}{suffix}",
            title="Negotiated protocol", border_style="green"
        ))

    def certificate(self, force: bool = False):
        """Make sure a valid certificate exists and show its timings"""
        authenticator = CertificateAuthenticator.from_config(
            self.api, self.auth_storage, self.config
        )
        try:
            keys, cert = authenticator.refresh(force=force).result()
        except VPNSessionError as e:
            console.print(f"[red]✗ Certificate refresh failed: {e}[/red]")
            return

        table = Table(title="Client Certificate", box=box.ROUNDED)
        table.add_column("Field", style="cyan")
        table.add_column("Value", style="white")
        table.add_row("Key fingerprint", keys.fingerprint[:32])
        table.add_row("Refresh at", time.ctime(cert.refresh_time))
        table.add_row("Expires at", time.ctime(cert.expiration_time))
        table.add_row(
            "Expires in",
            self._format_duration(cert.expiration_time - time.time())
        )
        console.print(table)

    def telemetry_flush(self):
        telemetry = self._telemetry()
        before = telemetry.buffer.count()
        telemetry.flush().result()
        telemetry.shutdown()
        after = telemetry.buffer.count()
        console.print(f"Delivered {before - after} of {before} buffered events")

    def telemetry_status(self):
        telemetry = self._telemetry()
        table = Table(title="Telemetry", box=box.SIMPLE)
        table.add_column("Setting", style="cyan")
        table.add_column("Value", style="white")
        table.add_row("Enabled", "✓" if telemetry.enabled else "✗")
        table.add_row("Buffer", "✓" if telemetry.use_buffer else "✗")
        table.add_row("Buffered events", str(telemetry.buffer.count()))
        table.add_row("Queue", str(telemetry.buffer.db_path))
        console.print(table)
        telemetry.shutdown()

    def logout(self, assume_yes: bool = False):
        """Forget credentials, keys and certificate"""
        if not assume_yes and not Confirm.ask("Log out and remove credentials?"):
            return
        CertificateAuthenticator.from_config(
            self.api, self.auth_storage, self.config
        ).clear_everything()
        self.credential_store.clear()
        console.print("[green]✓ Logged out[/green]")

    @staticmethod
    def _format_duration(seconds: float) -> str:
        """Format duration in human readable format"""
        seconds = max(0, int(seconds))
        hours, remainder = divmod(seconds, 3600)
        minutes, seconds = divmod(remainder, 60)
        if hours > 0:
            return f"{hours}h {minutes}m {seconds}s"
        if minutes > 0:
            return f"{minutes}m {seconds}s"
        return f"{seconds}s"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='vpn-session',
        description='VPN session and connection orchestration core',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s refresh
  %(prog)s servers --country CH
  %(prog)s probe 42
  %(prog)s certificate --force
  %(prog)s telemetry flush
        """
    )
    parser.add_argument('--config-dir', type=Path,
                        help='Directory holding settings.yaml')
    parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
        help='Set logging level'
    )

    subparsers = parser.add_subparsers(dest='command',
                                       help='Command to execute')

    subparsers.add_parser('refresh', help='Refresh servers and account data')

    servers_parser = subparsers.add_parser('servers', help='List servers')
    servers_parser.add_argument('--country', help='Country code (e.g., CH)')

    probe_parser = subparsers.add_parser(
        'probe', help='Probe protocol availability on a server'
    )
    probe_parser.add_argument('server_id', help='Server ID')

    cert_parser = subparsers.add_parser(
        'certificate', help='Ensure a valid client certificate'
    )
    cert_parser.add_argument('--force', action='store_true',
                             help='Issue a new certificate even if valid')

    telemetry_parser = subparsers.add_parser('telemetry',
                                             help='Telemetry buffer')
    telemetry_parser.add_argument('action', choices=['flush', 'status'])

    logout_parser = subparsers.add_parser('logout', help='Remove credentials')
    logout_parser.add_argument('-y', '--yes', action='store_true',
                               help='Do not ask for confirmation')
    return parser


def main(argv=None):
    """Main entry point"""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    config = ConfigManager(args.config_dir)
    log_level = args.log_level or config.get('log_level', 'INFO')
    setup_file_logging('vpn_session', config.get('log_file'), log_level)
    set_logging_level(log_level)

    try:
        cli = VPNSessionCLI(config)

        if args.command == 'refresh':
            cli.refresh()
        elif args.command == 'servers':
            cli.list_servers(country=args.country)
        elif args.command == 'probe':
            cli.probe(args.server_id)
        elif args.command == 'certificate':
            cli.certificate(force=args.force)
        elif args.command == 'telemetry':
            if args.action == 'flush':
                cli.telemetry_flush()
            else:
                cli.telemetry_status()
        elif args.command == 'logout':
            cli.logout(assume_yes=args.yes)

    except KeyboardInterrupt:
        console.print("\nOperation cancelled by user")
        sys.exit(0)
    except VPNSessionError as e:
        logger.error(f"{type(e).__name__}: {e}")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)

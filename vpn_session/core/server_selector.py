"""
Server selection for connection targets
"""

import logging
from typing import List, Optional

from .alerts import AlertSink, MaintenanceAlert, UpgradeRequiredAlert
from .errors import ServerTierError, ServerUnavailableError
from .storage import ServerDirectory
from .types import ConnectionTarget, ServerCandidate, TargetKind, VpnTiers

logger = logging.getLogger(__name__)


class ServerSelector:
    """Resolves a connection target to one accessible server"""

    def __init__(self, directory: ServerDirectory,
                 alert_sink: Optional[AlertSink] = None):
        self.directory = directory
        self.alert_sink = alert_sink

    def _push(self, alert):
        if self.alert_sink is not None:
            self.alert_sink.push(alert)

    def accessible(self, max_tier: int,
                   servers: Optional[List[ServerCandidate]] = None
                   ) -> List[ServerCandidate]:
        """Servers the user may use right now"""
        servers = self.directory.fetch() if servers is None else servers
        return [
            s for s in servers
            if s.tier <= max_tier and not s.under_maintenance
        ]

    def get_best_server(self, max_tier: int,
                        country_code: Optional[str] = None,
                        city: Optional[str] = None,
                        exclude: Optional[str] = None
                        ) -> Optional[ServerCandidate]:
        """
        Lowest load accessible server, restricted to a country (and city)
        when given.
        """
        candidates = [
            s for s in self.accessible(max_tier)
            if s.id != exclude
        ]
        if country_code:
            candidates = [
                s for s in candidates
                if s.country_code.upper() == country_code.upper()
            ]
        if city:
            candidates = [
                s for s in candidates
                if s.city and s.city.lower() == city.lower()
            ]
        if not candidates:
            return None
        return min(candidates, key=lambda s: (s.load, s.name))

    def find_replacement(self, current: ServerCandidate,
                         max_tier: int) -> Optional[ServerCandidate]:
        """Best accessible server, same country preferred"""
        return (
            self.get_best_server(max_tier, current.country_code,
                                 exclude=current.id) or
            self.get_best_server(max_tier, exclude=current.id)
        )

    def resolve(self, target: ConnectionTarget,
                max_tier: int) -> ServerCandidate:
        """
        Server for a connection target

        Raises:
            ServerTierError: an explicit server needs a higher plan
            ServerUnavailableError: nothing matches or the server is down
        """
        if target.server_id:
            server = self.directory.find(target.server_id)
            if server is None:
                raise ServerUnavailableError(
                    f"Unknown server {target.server_id}"
                )
            if server.tier > max_tier:
                self._push(UpgradeRequiredAlert())
                raise ServerTierError(
                    f"Server {server.name} requires tier {server.tier}",
                    {'server': server.id, 'tier': server.tier}
                )
            if server.under_maintenance:
                self._push(MaintenanceAlert())
                raise ServerUnavailableError(
                    f"Server {server.name} is under maintenance",
                    {'server': server.id}
                )
            return server

        city = target.city_name if target.kind == TargetKind.CITY else None
        server = self.get_best_server(max_tier, target.country_code, city)
        if server is None:
            if target.country_code and self.get_best_server(
                    VpnTiers.INTERNAL, target.country_code, city) is not None:
                self._push(UpgradeRequiredAlert())
                raise ServerTierError(
                    f"No server in {target.country_code} on the current plan"
                )
            raise ServerUnavailableError(
                f"No server available for {target.kind.name.lower()} "
                f"{target.country_code or ''}".rstrip()
            )

        logger.debug(f"Resolved {target.kind.name.lower()} to {server.name}")
        return server

    def find_servers(self, country: Optional[str] = None
                     ) -> List[ServerCandidate]:
        servers = self.directory.fetch()
        if country:
            servers = [
                s for s in servers
                if s.country_code.upper() == country.upper()
            ]
        return sorted(servers, key=lambda s: (s.country_code, s.name))

"""Tests for server selection."""

import pytest

from vpn_session.core.alerts import (
    AlertService, MaintenanceAlert, UpgradeRequiredAlert,
)
from vpn_session.core.errors import ServerTierError, ServerUnavailableError
from vpn_session.core.server_selector import ServerSelector
from vpn_session.core.types import ConnectionTarget, VpnTiers

from conftest import SERVERS


@pytest.fixture
def alerts():
    return AlertService()


@pytest.fixture
def selector(server_directory, alerts):
    return ServerSelector(server_directory, alerts)


class TestServerSelector:
    """Tests for ServerSelector class."""

    def test_fastest_picks_lowest_load(self, selector):
        """Test that maintenance servers are skipped for fastest."""
        server = selector.resolve(ConnectionTarget.fastest(), VpnTiers.PLUS)
        assert server.name == 'CH#2'

    def test_fastest_respects_tier(self, selector):
        server = selector.resolve(ConnectionTarget.fastest(), VpnTiers.FREE)
        assert server.name == 'DE#1'

    def test_country(self, selector):
        server = selector.resolve(ConnectionTarget.for_country('ch'),
                                  VpnTiers.PLUS)
        assert server.id == '2'

    def test_city(self, selector):
        server = selector.resolve(ConnectionTarget.for_city('CH', 'Geneva'),
                                  VpnTiers.PLUS)
        assert server.id == '3'

    def test_explicit_server(self, selector):
        server = selector.resolve(ConnectionTarget.for_server('6'),
                                  VpnTiers.PLUS)
        assert server.name == 'SE#1'

    def test_profile_with_country(self, selector):
        target = ConnectionTarget.for_profile('work', country_code='se')
        assert selector.resolve(target, VpnTiers.PLUS).id == '6'

    def test_server_above_tier(self, selector, alerts):
        """Test that a paid server is refused for a free account."""
        with pytest.raises(ServerTierError):
            selector.resolve(ConnectionTarget.for_server('2'), VpnTiers.FREE)
        assert isinstance(alerts.alerts[-1], UpgradeRequiredAlert)

    def test_server_in_maintenance(self, selector, alerts):
        with pytest.raises(ServerUnavailableError):
            selector.resolve(ConnectionTarget.for_server('5'), VpnTiers.PLUS)
        assert isinstance(alerts.alerts[-1], MaintenanceAlert)

    def test_unknown_server(self, selector):
        with pytest.raises(ServerUnavailableError):
            selector.resolve(ConnectionTarget.for_server('404'), VpnTiers.PLUS)

    def test_country_only_on_higher_plan(self, selector, alerts):
        """Test that a country with only paid servers asks for an upgrade."""
        with pytest.raises(ServerTierError):
            selector.resolve(ConnectionTarget.for_country('SE'), VpnTiers.FREE)
        assert isinstance(alerts.alerts[-1], UpgradeRequiredAlert)

    def test_unknown_country(self, selector):
        with pytest.raises(ServerUnavailableError):
            selector.resolve(ConnectionTarget.for_country('JP'), VpnTiers.PLUS)

    def test_replacement_prefers_same_country(self, selector):
        replacement = selector.find_replacement(SERVERS[1], VpnTiers.PLUS)
        assert replacement.id == '3'

    def test_replacement_elsewhere(self, selector):
        """Test that another country is used when the current has none."""
        replacement = selector.find_replacement(SERVERS[5], VpnTiers.PLUS)
        assert replacement.id == '2'

    def test_find_servers(self, selector):
        names = [s.name for s in selector.find_servers('de')]
        assert names == ['DE#1', 'DE#2']
        assert len(selector.find_servers()) == len(SERVERS)

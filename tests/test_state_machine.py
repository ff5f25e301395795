"""Tests for the connection state machine."""

from dataclasses import replace

import pytest

from vpn_session.core.alerts import (
    CredentialsMissingAlert, MaintenanceAlert, MaxSessionsAlert,
    PolicyViolationAlert, UpgradeRequiredAlert, UserBecameDelinquentAlert,
    UserPlanDowngradedAlert,
)
from vpn_session.core.errors import (
    ConnectionCancelledError, ServerTierError, ServerUnavailableError,
    VPNConnectionError,
)
from vpn_session.core.state_machine import AttemptStarted
from vpn_session.core.types import (
    ClientConfig, ConnectionRequest, ConnectionTarget, Connected, Connecting,
    Disconnected, FeatureFlags, NetShieldLevel, ProtocolAvailability,
    ReconnectInfo, StateKind, UserAction, VpnProtocol, VpnTrigger,
)
from vpn_session.providers.tunnel_agent import AgentErrorCode, AgentState

from conftest import DeferredExecutor, FREE_VPN, PLUS_VPN, SERVERS


def country_request(code='CH', protocol=None):
    return ConnectionRequest(
        target=ConnectionTarget.for_country(code),
        protocol=protocol,
        trigger=VpnTrigger.COUNTRY,
    )


class TestConnect:
    """Tests for connecting through the state machine."""

    def test_smart_protocol_connects_over_wireguard(self, harness):
        """Test that only WireGuard answering on CH gives a WireGuard tunnel."""
        future = harness.session.connect(country_request('CH'))

        result = future.result(timeout=5)
        assert isinstance(result, AttemptStarted)
        assert result.protocol == VpnProtocol.WIREGUARD
        assert result.ports == (51820,)
        assert result.server.id == '2'

        command = harness.agent.started[0]
        assert command.protocol == VpnProtocol.WIREGUARD
        assert command.ports == (51820,)
        assert command.username == 'vpnuser'
        assert command.certificate.is_bound_to(command.keys)

        state = harness.state
        assert isinstance(state, Connected)
        assert state.protocol == VpnProtocol.WIREGUARD
        assert state.server.country_code == 'CH'
        assert harness.kinds() == [StateKind.CONNECTING, StateKind.CONNECTED]

    def test_negotiation_fallback_when_nothing_answers(self, make_harness):
        """Test that the fallback protocol is used when every probe fails."""
        harness = make_harness(probe_results={
            VpnProtocol.IKEV2: ProtocolAvailability.unavailable(),
        })

        result = harness.session.connect(country_request()).result(timeout=5)

        assert result.protocol == VpnProtocol.WIREGUARD
        assert result.ports == (51820,)

    def test_explicit_protocol_skips_probing(self, harness):
        """Test that a fixed protocol uses the configured ports unprobed."""
        request = country_request('DE', protocol=VpnProtocol.OPENVPN_TCP)

        result = harness.session.connect(request).result(timeout=5)

        assert harness.probe_set.calls == []
        assert result.protocol == VpnProtocol.OPENVPN_TCP
        assert result.ports == (443, 7770, 8443)

    def test_client_config_ports_replace_configured_ones(self, harness):
        """Test that ports served by the API are used after a refresh."""
        harness.api.client_config_result = ClientConfig(
            default_ports={VpnProtocol.WIREGUARD: [9999]}
        )
        assert harness.session.refresher.refresh_data() is True
        request = ConnectionRequest(
            target=ConnectionTarget.for_server('1'),
            protocol=VpnProtocol.WIREGUARD,
        )

        result = harness.session.connect(request).result(timeout=5)

        assert result.ports == (9999,)
        assert harness.agent.started[-1].ports == (9999,)

    def test_connected_always_follows_connecting(self, harness):
        """Test that no observer sees connected without a connecting first."""
        harness.session.connect(country_request('CH')).result(timeout=5)
        harness.session.connect(country_request('SE')).result(timeout=5)
        harness.agent.report_error(
            harness.state.attempt_id, AgentErrorCode.BAD_CERT_SIGNATURE
        )

        for change in harness.changes:
            if change.current.kind == StateKind.CONNECTED:
                assert change.previous.kind == StateKind.CONNECTING
                assert change.previous.attempt_id == change.current.attempt_id

    def test_state_changes_carry_user_action(self, harness):
        """Test that a connect request is reported as a user connect."""
        harness.session.connect(country_request()).result(timeout=5)

        first = harness.changes[0]
        assert first.user_action == UserAction.CONNECT
        assert first.trigger == VpnTrigger.COUNTRY

    def test_active_connection_observers(self, harness):
        """Test that active connection observers see connect and disconnect."""
        harness.session.connect(country_request()).result(timeout=5)
        harness.session.disconnect()

        assert isinstance(harness.active[0], Connected)
        assert harness.active[-1] is None

    def test_unsubscribe(self, harness):
        """Test that an unsubscribed observer is not called anymore."""
        seen = []
        unsubscribe = harness.machine.subscribe_state(seen.append)
        unsubscribe()

        harness.session.connect(country_request()).result(timeout=5)

        assert seen == []


class TestConnectFailures:
    """Tests for connect requests that cannot succeed."""

    def test_server_above_plan(self, make_harness):
        """Test that an explicit paid server fails for a free account."""
        harness = make_harness(vpn=FREE_VPN)
        request = ConnectionRequest(target=ConnectionTarget.for_server('2'))

        future = harness.session.connect(request)

        with pytest.raises(ServerTierError):
            future.result(timeout=5)
        assert any(isinstance(a, UpgradeRequiredAlert)
                   for a in harness.alerts.alerts)
        assert harness.state == Disconnected()
        assert harness.agent.started == []

    def test_server_in_maintenance(self, harness):
        """Test that a server in maintenance is refused."""
        request = ConnectionRequest(target=ConnectionTarget.for_server('5'))

        with pytest.raises(ServerUnavailableError):
            harness.session.connect(request).result(timeout=5)
        assert harness.changes == []

    def test_missing_credentials(self, make_harness):
        """Test that a connect without credentials asks for a new login."""
        harness = make_harness(vpn=None)

        future = harness.session.connect(country_request())

        with pytest.raises(VPNConnectionError):
            future.result(timeout=5)
        assert any(isinstance(a, CredentialsMissingAlert)
                   for a in harness.alerts.alerts)

    def test_certificate_failure_disconnects(self, harness):
        """Test that a failing issuer ends the attempt in disconnected."""
        harness.api.certificate_always_fails = True

        future = harness.session.connect(country_request())

        with pytest.raises(VPNConnectionError) as excinfo:
            future.result(timeout=10)
        assert excinfo.value.additional_context == {
            'cause': 'CertificateIssuanceFailedError'
        }
        assert harness.state.kind == StateKind.DISCONNECTED
        assert harness.kinds() == [StateKind.CONNECTING,
                                   StateKind.DISCONNECTED]
        assert harness.agent.started == []


class TestStaleEvents:
    """Tests for agent events of superseded attempts."""

    def test_events_of_old_attempt_are_discarded(self, make_harness):
        """Test that a late connected of a superseded attempt is ignored."""
        harness = make_harness(auto=False)
        harness.session.connect(country_request('CH')).result(timeout=5)
        harness.session.connect(country_request('SE')).result(timeout=5)

        assert harness.agent.stopped == [1]
        harness.agent.report_state(1, AgentState.CONNECTED)
        harness.agent.report_error(1, AgentErrorCode.BAD_CERT_SIGNATURE)

        state = harness.state
        assert isinstance(state, Connecting)
        assert state.attempt_id == 2
        assert len(harness.agent.started) == 2

        harness.agent.report_state(2, AgentState.CONNECTED)
        assert isinstance(harness.state, Connected)
        assert harness.state.server.country_code == 'SE'

    def test_superseded_future_fails(self, make_harness):
        """Test that the future of a superseded attempt is cancelled."""
        executor = DeferredExecutor()
        harness = make_harness(executor=executor)
        first = harness.session.connect(country_request('CH'))
        second = harness.session.connect(country_request('DE'))

        executor.run_pending()

        with pytest.raises(ConnectionCancelledError):
            first.result(timeout=5)
        assert second.result(timeout=5).server.country_code == 'DE'
        assert [c.session_id for c in harness.agent.started] == [2]

    def test_new_connect_cancels_old_certificate_refresh(self, make_harness):
        """Test that a replaced session leaves no refresh timer behind."""
        harness = make_harness(auto=False)
        harness.session.connect(country_request('CH')).result(timeout=5)
        harness.agent.report_state(1, AgentState.CONNECTED)
        old_timer = harness.timers.active('VPN-CertRefresh')[0]

        harness.session.connect(country_request('SE')).result(timeout=5)

        assert isinstance(harness.state, Connecting)
        assert old_timer.cancelled
        assert harness.timers.active('VPN-CertRefresh') == []


class TestDisconnect:
    """Tests for user initiated disconnects."""

    def test_disconnect_waits_for_agent(self, make_harness):
        """Test that disconnecting lasts until the agent confirms."""
        harness = make_harness(auto=False)
        harness.session.connect(country_request()).result(timeout=5)
        harness.agent.report_state(1, AgentState.CONNECTED)

        harness.session.disconnect(trigger=VpnTrigger.TRAY)

        assert harness.state.kind == StateKind.DISCONNECTING
        assert harness.changes[-1].user_action == UserAction.DISCONNECT
        assert harness.changes[-1].trigger == VpnTrigger.TRAY
        assert harness.agent.stopped == [1]

        harness.agent.report_state(1, AgentState.DISCONNECTED)
        assert harness.state.kind == StateKind.DISCONNECTED

    def test_forced_disconnect(self, make_harness):
        """Test that a forced disconnect does not wait for the agent."""
        harness = make_harness(auto=False)
        harness.session.connect(country_request()).result(timeout=5)
        harness.agent.report_state(1, AgentState.CONNECTED)

        harness.session.disconnect(force=True)

        assert harness.state.kind == StateKind.DISCONNECTED
        assert StateKind.DISCONNECTING not in harness.kinds()

    def test_abort_while_connecting(self, make_harness):
        """Test that a disconnect while connecting is an abort."""
        harness = make_harness(auto=False)
        harness.session.connect(country_request()).result(timeout=5)

        harness.session.disconnect()
        harness.agent.report_state(1, AgentState.DISCONNECTED)

        assert harness.changes[-2].user_action == UserAction.ABORT
        assert harness.state.kind == StateKind.DISCONNECTED

    def test_abort_before_agent_start(self, make_harness):
        """Test that aborting before the agent started skips disconnecting."""
        executor = DeferredExecutor()
        harness = make_harness(executor=executor)
        future = harness.session.connect(country_request())

        harness.session.disconnect()
        executor.run_pending()

        assert harness.kinds() == [StateKind.CONNECTING,
                                   StateKind.DISCONNECTED]
        assert harness.changes[-1].user_action == UserAction.ABORT
        with pytest.raises(ConnectionCancelledError):
            future.result(timeout=5)
        assert harness.agent.started == []

    def test_disconnect_when_disconnected_is_noop(self, harness):
        """Test that disconnecting twice publishes nothing."""
        harness.session.disconnect()
        harness.session.disconnect(force=True)

        assert harness.changes == []

    def test_tunnel_drop(self, harness):
        """Test that an unexpected agent disconnect ends the session."""
        harness.session.connect(country_request()).result(timeout=5)

        harness.agent.report_state(1, AgentState.DISCONNECTED)

        assert harness.state.kind == StateKind.DISCONNECTED
        assert harness.changes[-1].user_action is None


class TestAgentErrors:
    """Tests for error codes reported by the tunnel agent."""

    def test_expired_certificate_refreshes_in_place(self, harness):
        """Test that an expired certificate never shows a disconnect."""
        harness.session.connect(country_request()).result(timeout=5)
        calls_before = harness.api.certificate_calls
        changes_before = len(harness.changes)
        tunnel_before = len(harness.tunnel)

        harness.agent.report_error(1, AgentErrorCode.CERTIFICATE_EXPIRED)

        assert harness.api.certificate_calls == calls_before + 1
        assert len(harness.agent.restarted) == 1
        session_id, keys, certificate = harness.agent.restarted[0]
        assert session_id == 1
        assert certificate.is_bound_to(keys)
        assert harness.state.kind == StateKind.CONNECTED
        assert len(harness.changes) == changes_before
        assert len(harness.tunnel) == tunnel_before
        assert len(harness.agent.started) == 1

    def test_bad_signature_rekeys_with_one_reconnect_cycle(self, harness):
        """Test that a bad signature rotates keys behind one tunnel cycle."""
        harness.session.connect(country_request()).result(timeout=5)
        old_keys = harness.agent.started[0].keys
        del harness.tunnel[:]
        del harness.changes[:]

        harness.agent.report_error(1, AgentErrorCode.BAD_CERT_SIGNATURE)

        assert harness.tunnel == [
            StateKind.DISCONNECTING, StateKind.DISCONNECTED,
            StateKind.CONNECTING, StateKind.CONNECTED,
        ]
        assert harness.kinds() == [StateKind.CONNECTING, StateKind.CONNECTED]
        assert StateKind.DISCONNECTED not in harness.kinds()

        assert len(harness.agent.started) == 2
        new_command = harness.agent.started[1]
        assert new_command.session_id == 2
        assert new_command.keys.fingerprint != old_keys.fingerprint
        assert new_command.certificate.is_bound_to(new_command.keys)
        assert harness.state.attempt_id == 2

    def test_max_sessions_terminates(self, harness):
        """Test that a max sessions error disconnects and alerts."""
        harness.session.connect(country_request()).result(timeout=5)

        harness.agent.report_error(1, AgentErrorCode.MAX_SESSIONS_PLUS)

        assert harness.state.kind == StateKind.DISCONNECTED
        assert any(isinstance(a, MaxSessionsAlert)
                   for a in harness.alerts.alerts)

    def test_policy_violation_terminates(self, harness):
        """Test that a torrent violation disconnects with its own alert."""
        harness.session.connect(country_request()).result(timeout=5)

        harness.agent.report_error(1, AgentErrorCode.USER_TORRENT_NOT_ALLOWED)

        assert harness.state.kind == StateKind.DISCONNECTED
        assert any(isinstance(a, PolicyViolationAlert)
                   for a in harness.alerts.alerts)

    def test_unknown_error_is_ignored(self, harness):
        """Test that unclassified agent errors change nothing."""
        harness.session.connect(country_request()).result(timeout=5)
        changes_before = len(harness.changes)

        harness.agent.report_error(1, AgentErrorCode.SERVER_ERROR)

        assert harness.state.kind == StateKind.CONNECTED
        assert len(harness.changes) == changes_before

    def test_update_features_restarts_session(self, harness):
        """Test that new features are pushed without a reconnect."""
        harness.session.connect(country_request()).result(timeout=5)
        request = replace(
            country_request(),
            features=FeatureFlags(netshield=NetShieldLevel.ADS_AND_MALWARE)
        )

        harness.machine.update_features(request)

        assert len(harness.agent.restarted) == 1
        assert harness.api.certificate_calls == 2
        assert harness.state.kind == StateKind.CONNECTED
        assert len(harness.agent.started) == 1


class TestServerChanges:
    """Tests for reconnects caused by account or server changes."""

    def test_plan_downgrade_moves_to_free_server(self, harness):
        """Test that a downgrade reconnects once to an accessible server."""
        harness.session.connect(country_request('CH')).result(timeout=5)
        assert harness.state.server.id == '2'

        harness.set_vpn(FREE_VPN)
        harness.session.refresher.refresh_account()

        expected = ReconnectInfo(from_server=SERVERS[1], to_server=SERVERS[0])
        assert harness.reconnects == [expected]
        state = harness.state
        assert isinstance(state, Connected)
        assert state.server.id == '1'
        assert state.request.trigger == VpnTrigger.COUNTRY

        alerts = [a for a in harness.alerts.alerts
                  if isinstance(a, UserPlanDowngradedAlert)]
        assert len(alerts) == 1
        assert alerts[0].reconnect_info == expected

    def test_delinquent_user_moves_to_free_server(self, harness):
        """Test that an overdue account is moved to a free server."""
        harness.session.connect(country_request('CH')).result(timeout=5)

        harness.set_vpn(replace(PLUS_VPN, delinquent=3))
        harness.session.refresher.refresh_account()

        assert harness.state.server.id == '1'
        assert len(harness.reconnects) == 1
        assert any(isinstance(a, UserBecameDelinquentAlert)
                   for a in harness.alerts.alerts)

    def test_upgrade_keeps_connection(self, make_harness):
        """Test that a plan upgrade does not touch the connection."""
        harness = make_harness(vpn=FREE_VPN)
        harness.session.connect(country_request('CH')).result(timeout=5)

        harness.set_vpn(PLUS_VPN)
        harness.session.refresher.refresh_account()

        assert harness.reconnects == []
        assert harness.state.server.id == '1'

    def test_maintenance_reconnects(self, harness):
        """Test that the maintenance poll moves the session elsewhere."""
        harness.session.connect(country_request('CH')).result(timeout=5)
        harness.mark_maintenance('2')

        timer = harness.timers.active('VPN-Maintenance')[0]
        timer.fire()

        assert harness.api.server_state_calls == ['2']
        assert len(harness.api.server_list_calls) == 1
        assert harness.reconnects == [
            ReconnectInfo(from_server=SERVERS[1], to_server=SERVERS[2])
        ]
        assert harness.state.server.id == '3'
        assert any(isinstance(a, MaintenanceAlert)
                   for a in harness.alerts.alerts)
        assert len(harness.timers.active('VPN-Maintenance')) == 1

    def test_maintenance_without_replacement(self, make_harness):
        """Test that no accessible server leaves the session disconnected."""
        harness = make_harness(vpn=FREE_VPN)
        harness.session.connect(
            ConnectionRequest(target=ConnectionTarget.for_server('4'))
        ).result(timeout=5)
        harness.server_directory.store([SERVERS[3]])

        harness.machine.handle_server_maintenance()

        assert harness.state.kind == StateKind.DISCONNECTED
        assert harness.reconnects == []
        alert = [a for a in harness.alerts.alerts
                 if isinstance(a, MaintenanceAlert)][0]
        assert alert.reconnect_info is None

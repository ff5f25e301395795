"""
Concurrent availability probes for the supported transport protocols
"""

import errno
import os
import selectors
import socket
import struct
import threading
import time
import logging
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from typing import Dict, Iterable, List, Optional

from .errors import ConnectionCancelledError, ProbeFailure
from .types import ProtocolAvailability, ServerCandidate, VpnProtocol

logger = logging.getLogger(__name__)

# Granularity of cancellation checks while waiting on sockets
POLL_SLICE = 0.1

IKE_PORTS_WITH_NON_ESP_MARKER = (4500,)
OPENVPN_HARD_RESET_CLIENT_V2 = 0x38
CONNECT_PENDING = (errno.EINPROGRESS, errno.EWOULDBLOCK, errno.EALREADY)


def ike_sa_init_packet() -> bytes:
    """IKEv2 header of an IKE_SA_INIT request with no payloads"""
    initiator_spi = os.urandom(8)
    responder_spi = b'\x00' * 8
    next_payload = 33  # SA
    version = 0x20
    exchange_type = 34  # IKE_SA_INIT
    flags = 0x08  # initiator
    message_id = 0
    length = 28
    return initiator_spi + responder_spi + struct.pack(
        '!BBBBII', next_payload, version, exchange_type, flags,
        message_id, length
    )


def openvpn_hard_reset_packet() -> bytes:
    """P_CONTROL_HARD_RESET_CLIENT_V2 with an empty ack array"""
    session_id = os.urandom(8)
    return (
        bytes([OPENVPN_HARD_RESET_CLIENT_V2]) + session_id +
        b'\x00' + struct.pack('!I', 0)
    )


class AvailabilityProbe:
    """
    Checks every candidate port of one protocol and reports the ones that
    answered before the probe's timeout.
    """

    protocol: VpnProtocol

    def __init__(self, ports: Iterable[int], timeout: float = 3.0):
        self.ports = [int(p) for p in ports]
        self.timeout = timeout

    def candidate_ports(self, server: ServerCandidate) -> List[int]:
        return server.ports_for(self.protocol, {self.protocol: self.ports})

    def check(self, server: ServerCandidate,
              stop: Optional[threading.Event] = None) -> ProtocolAvailability:
        """
        Probe the server

        Raises:
            ProbeFailure: the probe could not run at all
        """
        stop = stop or threading.Event()
        ports = self.candidate_ports(server)
        if not ports:
            return ProtocolAvailability.unavailable()

        try:
            answered = self._probe_ports(server.entry_ip, ports, stop)
        except OSError as e:
            raise ProbeFailure(
                f"{self.protocol.value} probe of {server.entry_ip} failed: {e}",
                {'protocol': self.protocol.value, 'server': server.id}
            ) from e

        available = [p for p in ports if p in answered]
        if not available:
            return ProtocolAvailability.unavailable()
        return ProtocolAvailability.available(available)

    def _probe_ports(self, host: str, ports: List[int],
                     stop: threading.Event) -> set:
        raise NotImplementedError


class UdpProbe(AvailabilityProbe):
    """Sends one datagram per port, any reply marks the port available"""

    def payload(self, port: int) -> bytes:
        raise NotImplementedError

    def _probe_ports(self, host, ports, stop):
        answered = set()
        sel = selectors.DefaultSelector()
        try:
            for port in ports:
                sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
                sock.setblocking(False)
                try:
                    sock.sendto(self.payload(port), (host, port))
                except OSError as e:
                    logger.debug(f"{self.protocol.value}:{port} send failed: {e}")
                    sock.close()
                    continue
                sel.register(sock, selectors.EVENT_READ, port)

            deadline = time.monotonic() + self.timeout
            while sel.get_map() and not stop.is_set():
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                for key, _ in sel.select(min(remaining, POLL_SLICE)):
                    try:
                        key.fileobj.recvfrom(1024)
                        answered.add(key.data)
                    except OSError:
                        # ICMP port unreachable surfaces here
                        pass
                    sel.unregister(key.fileobj)
                    key.fileobj.close()
        finally:
            for key in list(sel.get_map().values()):
                key.fileobj.close()
            sel.close()
        return answered


class IKEv2Probe(UdpProbe):
    protocol = VpnProtocol.IKEV2

    def payload(self, port):
        packet = ike_sa_init_packet()
        if port in IKE_PORTS_WITH_NON_ESP_MARKER:
            return b'\x00' * 4 + packet
        return packet


class OpenVpnUdpProbe(UdpProbe):
    protocol = VpnProtocol.OPENVPN_UDP

    def payload(self, port):
        return openvpn_hard_reset_packet()


class WireGuardProbe(UdpProbe):
    protocol = VpnProtocol.WIREGUARD

    def __init__(self, ports, timeout=3.0, ping: str = 'ping'):
        super().__init__(ports, timeout)
        self.ping = ping.encode()

    def payload(self, port):
        return self.ping


class OpenVpnTcpProbe(AvailabilityProbe):
    """An established TCP connection marks the port available"""
    protocol = VpnProtocol.OPENVPN_TCP

    def _probe_ports(self, host, ports, stop):
        answered = set()
        sel = selectors.DefaultSelector()
        try:
            for port in ports:
                sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
                sock.setblocking(False)
                result = sock.connect_ex((host, port))
                if result == 0:
                    answered.add(port)
                    sock.close()
                    continue
                if result not in CONNECT_PENDING:
                    # Refused right away
                    sock.close()
                    continue
                sel.register(sock, selectors.EVENT_WRITE, port)

            deadline = time.monotonic() + self.timeout
            while sel.get_map() and not stop.is_set():
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                for key, _ in sel.select(min(remaining, POLL_SLICE)):
                    error = key.fileobj.getsockopt(
                        socket.SOL_SOCKET, socket.SO_ERROR
                    )
                    if error == 0:
                        answered.add(key.data)
                    sel.unregister(key.fileobj)
                    key.fileobj.close()
        finally:
            for key in list(sel.get_map().values()):
                key.fileobj.close()
            sel.close()
        return answered


class ProbeSet:
    """Runs one probe per protocol concurrently against a server"""

    def __init__(self, probes: Iterable[AvailabilityProbe]):
        self.probes: Dict[VpnProtocol, AvailabilityProbe] = {
            probe.protocol: probe for probe in probes
        }

    @classmethod
    def from_config(cls, config) -> 'ProbeSet':
        timeout = float(config.get('smart_protocol.timeout', 3.0))
        ports = config.protocol_ports()
        return cls([
            IKEv2Probe(ports[VpnProtocol.IKEV2], timeout),
            OpenVpnUdpProbe(ports[VpnProtocol.OPENVPN_UDP], timeout),
            OpenVpnTcpProbe(ports[VpnProtocol.OPENVPN_TCP], timeout),
            WireGuardProbe(
                ports[VpnProtocol.WIREGUARD], timeout,
                config.get('smart_protocol.wireguard_ping', 'ping')
            ),
        ])

    def update_ports(self, ports: Dict[VpnProtocol, List[int]]):
        """Replace the candidate ports of every probe that has new ones"""
        for protocol, probe in self.probes.items():
            if ports.get(protocol):
                probe.ports = [int(p) for p in ports[protocol]]

    def run(self, server: ServerCandidate,
            protocols: Optional[Iterable[VpnProtocol]] = None,
            cancel_event: Optional[threading.Event] = None,
            ) -> Dict[VpnProtocol, ProtocolAvailability]:
        """
        Probe the server with every requested protocol

        Returns:
            Availability per protocol, ``unavailable`` for probes that
            errored or did not finish in time

        Raises:
            ConnectionCancelledError: cancel_event was set
        """
        cancel_event = cancel_event or threading.Event()
        selected = [
            self.probes[p] for p in (protocols or self.probes)
            if p in self.probes
        ]
        results = {
            probe.protocol: ProtocolAvailability.unavailable()
            for probe in selected
        }
        if not selected:
            return results

        logger.debug(f"Probing {server.entry_ip} with "
                     f"{', '.join(p.protocol.value for p in selected)}")

        stop = threading.Event()
        executor = ThreadPoolExecutor(
            max_workers=len(selected), thread_name_prefix="VPN-Probe"
        )
        try:
            futures = {
                executor.submit(probe.check, server, stop): probe
                for probe in selected
            }
            # Each probe stops at its own timeout, the grace covers scheduling
            deadline = time.monotonic() + max(p.timeout for p in selected) + 1.0
            pending = set(futures)
            while pending:
                if cancel_event.is_set():
                    raise ConnectionCancelledError(
                        f"Probing {server.name} cancelled"
                    )
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    logger.warning(f"{len(pending)} probe(s) of {server.name} "
                                   f"timed out")
                    break
                done, pending = wait(
                    pending, timeout=min(remaining, POLL_SLICE),
                    return_when=FIRST_COMPLETED
                )
                for future in done:
                    protocol = futures[future].protocol
                    try:
                        results[protocol] = future.result()
                    except ProbeFailure as e:
                        logger.debug(f"Probe failure: {e}")
                    except Exception as e:
                        logger.debug(f"{protocol.value} probe error: {e}")
                    logger.debug(f"{protocol.value}: {results[protocol]}")
        finally:
            stop.set()
            executor.shutdown(wait=False)

        return results

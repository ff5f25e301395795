"""
Protocol negotiation on top of the availability probes
"""

import threading
import logging
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from .errors import NegotiationExhausted
from .probes import ProbeSet
from .types import ProtocolAvailability, ServerCandidate, VpnProtocol

logger = logging.getLogger(__name__)

FALLBACK_PROTOCOL = VpnProtocol.WIREGUARD
FALLBACK_PORT = 51820


@dataclass(frozen=True)
class NegotiationResult:
    protocol: VpnProtocol
    ports: Tuple[int, ...]
    is_fallback: bool = False


class ProtocolNegotiator:
    """Picks the highest priority protocol that answered its probe"""

    def __init__(self, probe_set: ProbeSet,
                 fallback_protocol: VpnProtocol = FALLBACK_PROTOCOL,
                 fallback_port: int = FALLBACK_PORT):
        self.probe_set = probe_set
        self.fallback = NegotiationResult(
            fallback_protocol, (fallback_port,), is_fallback=True
        )

    def choose(self, results: Dict[VpnProtocol, ProtocolAvailability]
               ) -> NegotiationResult:
        """Deterministic choice over completed probe results"""
        selectable = sorted(
            (protocol for protocol, availability in results.items()
             if availability.is_available and availability.ports),
            key=lambda protocol: protocol.priority
        )
        if not selectable:
            logger.info(
                f"{NegotiationExhausted('No protocol available')}, "
                f"falling back to {self.fallback.protocol.value}"
            )
            return self.fallback

        best = selectable[0]
        return NegotiationResult(best, tuple(results[best].ports))

    def negotiate(self, server: ServerCandidate,
                  cancel_event: Optional[threading.Event] = None
                  ) -> NegotiationResult:
        """
        Probe the server and choose a protocol. Never cached: network
        conditions can change between attempts.

        Raises:
            ConnectionCancelledError: cancel_event was set while probing
        """
        results = self.probe_set.run(server, cancel_event=cancel_event)
        result = self.choose(results)
        logger.info(f"Best protocol for {server.entry_ip} is "
                    f"{result.protocol.value} with ports {list(result.ports)}")
        return result

"""Daemon session for the typegen schema parser.

This package owns a long-running ``typegen parse --json --daemon`` process
and turns its line-delimited JSON stream into a request/response API.

Architecture:
- LineFramer / StreamDecoder: stdout bytes -> complete records
- protocol: record <-> ready signal / ResultEnvelope, error unescaping
- ProcessSupervisor: spawn, ready handshake, exit detection, termination
- RequestMultiplexer: one request on the wire, FIFO-dedup or single-slot
- DaemonSession: initialize() / submit() / dispose()
"""

from tgsdaemon.daemon.diagnostics import Diagnostic, errors_to_diagnostics
from tgsdaemon.daemon.framing import LineFramer
from tgsdaemon.daemon.multiplexer import (
    FifoMultiplexer,
    SingleSlotMultiplexer,
    create_multiplexer,
)
from tgsdaemon.daemon.protocol import (
    READY,
    ResultEnvelope,
    decode_record,
    encode_request,
    escape_error,
    split_error,
    unescape_error,
)
from tgsdaemon.daemon.session import DaemonSession
from tgsdaemon.daemon.state import SessionState

__all__ = [
    "DaemonSession",
    "SessionState",
    "LineFramer",
    "FifoMultiplexer",
    "SingleSlotMultiplexer",
    "create_multiplexer",
    "READY",
    "ResultEnvelope",
    "decode_record",
    "encode_request",
    "escape_error",
    "split_error",
    "unescape_error",
    "Diagnostic",
    "errors_to_diagnostics",
]

"""Remote call transports for cliaccel.

Classes:
    :class:`Transport` -- abstract base with retry and exponential backoff.
    :class:`SubprocessTransport` -- runs a provider CLI per request.
    :class:`HttpTransport` -- posts to a JSON gateway with :mod:`httpx`.
    :class:`FunctionTransport` -- wraps an in-process callable.

:func:`build_transport` picks one from a
:class:`~cliaccel.models.TransportConfig`.
"""

from cliaccel.models import TransportConfig
from cliaccel.transport.base import THROTTLING_CODES, Transport
from cliaccel.transport.function import FunctionTransport
from cliaccel.transport.gateway import HttpTransport
from cliaccel.transport.process import SubprocessTransport, parse_cli_error, parse_cli_output


def build_transport(config: TransportConfig) -> Transport:
    """Instantiate the transport named by ``config.kind``."""
    if config.kind == "http":
        return HttpTransport.from_config(config)
    return SubprocessTransport.from_config(config)


__all__ = [
    "THROTTLING_CODES",
    "FunctionTransport",
    "HttpTransport",
    "SubprocessTransport",
    "Transport",
    "build_transport",
    "parse_cli_error",
    "parse_cli_output",
]

"""
Transport selection from configuration
"""

from typing import Callable

from ..core.auth import AuthProvider
from ..core.broker_client import BrokerClient
from ..ingestion.directory import InstrumentDirectory
from ..ingestion.grouping import MAX_BATCH
from ..ingestion.price_writer import PriceWriter
from ..ingestion.tick_buffer import DEFAULT_CAPACITY
from .base import Transport
from .polling import PollingTransport
from .streaming import StreamingTransport

TRANSPORTS = ("polling", "streaming")


def build_transport(
    config: dict,
    broker: BrokerClient,
    auth: AuthProvider,
    directory: InstrumentDirectory,
    writer: PriceWriter,
) -> Transport:
    """
    Build the transport named by config["transport"].

    Args:
        config: The `ingest` section of the configuration
    """
    kind = (config.get('transport') or 'polling').lower()

    if kind == 'polling':
        return PollingTransport(
            broker=broker,
            directory=directory,
            writer=writer,
            poll_interval=float(config.get('poll_interval', 7.0)),
            batch_size=int(config.get('batch_size', MAX_BATCH)),
            batch_delay=float(config.get('batch_delay', 1.0)),
        )

    if kind == 'streaming':
        return StreamingTransport(
            broker=broker,
            auth=auth,
            directory=directory,
            writer=writer,
            flush_interval=float(config.get('flush_interval', 2.0)),
            heartbeat_interval=float(config.get('heartbeat_interval', 10.0)),
            liveness_window=float(config.get('liveness_window', 60.0)),
            reconnect_base_delay=float(config.get('reconnect_base_delay', 2.0)),
            max_reconnect_attempts=int(config.get('max_reconnect_attempts', 10)),
            buffer_capacity=int(config.get('buffer_capacity', DEFAULT_CAPACITY)),
        )

    raise ValueError(f"Unknown transport {kind!r}, expected one of {TRANSPORTS}")


def transport_factory(config: dict, **collaborators) -> Callable[[], Transport]:
    """Defer construction until the engine first needs a transport"""
    if (config.get('transport') or 'polling').lower() not in TRANSPORTS:
        raise ValueError(f"Unknown transport {config.get('transport')!r}, expected one of {TRANSPORTS}")
    return lambda: build_transport(config, **collaborators)

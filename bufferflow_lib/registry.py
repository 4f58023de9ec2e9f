"""Lookup of buffer flow variants by firmware name."""

import logging
from typing import Dict, Optional, Tuple, Type

from bufferflow_lib.bufferflow import Bufferflow, DefaultBufferflow, PortLike
from bufferflow_lib.errors import UnknownBufferAlgorithm
from bufferflow_lib.events import EventSink
from bufferflow_lib.repetier import RepetierBufferflow

logger = logging.getLogger(__name__)

_VARIANTS: Dict[str, Type[Bufferflow]] = {
    DefaultBufferflow.name: DefaultBufferflow,
    RepetierBufferflow.name: RepetierBufferflow,
}

AVAILABLE_BUFFER_ALGORITHMS: Tuple[str, ...] = tuple(_VARIANTS)


def create_bufferflow(
    algorithm: str,
    port_name: str,
    sink: EventSink,
    port: Optional[PortLike] = None,
    start_poller: bool = True,
) -> Bufferflow:
    """Build the buffer flow for a firmware type.

    Args:
        algorithm: One of AVAILABLE_BUFFER_ALGORITHMS (case-insensitive)
        port_name: Port display name used in event payloads
        sink: Event sink for classified events
        port: Owning port, if any
        start_poller: Start the variant's status poller

    Returns:
        New buffer flow instance

    Raises:
        UnknownBufferAlgorithm: If algorithm is not registered
    """
    variant = _VARIANTS.get(algorithm.strip().lower())
    if variant is None:
        raise UnknownBufferAlgorithm(
            f"Buffer algorithm must be one of {list(AVAILABLE_BUFFER_ALGORITHMS)}, got '{algorithm}'"
        )

    logger.debug(f"Creating {variant.name} buffer flow for {port_name}")
    return variant(port_name, sink, port=port, start_poller=start_poller)

"""
Pipeline Simulator: one-shot source -> processor -> sink run in memory.

Builds two sessions with mirrored keys over a ``MemoryChannel`` pair,
streams ``data`` from one to the other and returns what the sink recovered.
"""
import logging
from typing import Optional

from ..exceptions import PipelineError
from .channel import MemoryChannel
from .config import PipelineConfig
from .keyring import SessionKeys
from .session import PipelineSession

logger = logging.getLogger("pipeline.transport")


class PipelineSimulator:
    """Source, processor (sender session) and sink (receiver session).

    Args:
        keys: Sender keys; the sink receives the mirrored copy. Random keys
            are generated when omitted.
        config: Settings shared by both ends.
    """

    def __init__(
        self,
        keys: Optional[SessionKeys] = None,
        config: Optional[PipelineConfig] = None,
    ):
        keys = keys or SessionKeys.generate()
        self.config = config or PipelineConfig()
        source_end, sink_end = MemoryChannel.pair()
        self.sink = PipelineSession.start(keys.mirrored(), sink_end, self.config)
        self.processor = PipelineSession.start(keys, source_end, self.config)
        self._source_end = source_end

    def run(self, data: bytes) -> bytes:
        """Transmit ``data`` and return the bytes delivered to the sink.

        Raises:
            PipelineError: If either end fails.
        """
        frames = self.processor.sendall(data)
        self._source_end.close()
        chunks = self.sink.receive_all()
        if len(chunks) != len(frames):
            raise PipelineError(
                f"sink delivered {len(chunks)} of {len(frames)} chunk(s)"
            )
        logger.info(
            "Simulated transfer of %d byte(s) in %d frame(s)",
            len(data), len(frames),
        )
        return b"".join(chunk.payload for chunk in chunks)

    def close(self) -> None:
        self.processor.close()
        self.sink.close()

    def __enter__(self) -> "PipelineSimulator":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


def simulate(
    data: bytes,
    keys: Optional[SessionKeys] = None,
    config: Optional[PipelineConfig] = None,
) -> bytes:
    """Run a complete secure transfer of ``data`` in memory.

    Returns:
        The recovered plaintext, identical to ``data`` on success.
    """
    with PipelineSimulator(keys, config) as simulator:
        return simulator.run(data)

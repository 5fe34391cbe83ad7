from __future__ import annotations

import asyncio
import json
import logging
from typing import Callable, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .database import SessionLocal
from .services.buffer import IngestResult, ingest_packet

logger = logging.getLogger("windwatch.udp")


def handle_datagram(data: bytes, session_factory: Callable[[], Session] = SessionLocal) -> Optional[IngestResult]:
    """Stage one datagram in its own transaction. Storage faults are logged and the packet dropped."""
    with session_factory() as db:
        try:
            result = ingest_packet(db, data)
            db.commit()
            return result
        except SQLAlchemyError:
            db.rollback()
            logger.exception(json.dumps({"event": "udp_ingest_failed", "bytes": len(data)}))
            return None


def _log_handler_failure(future: asyncio.Future) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.error(
            json.dumps({"event": "udp_handler_crashed", "error": f"{exc.__class__.__name__}: {exc}"}),
            exc_info=exc,
        )


class TelemetryProtocol(asyncio.DatagramProtocol):
    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self.session_factory = session_factory
        self.transport: Optional[asyncio.DatagramTransport] = None

    def connection_made(self, transport) -> None:
        self.transport = transport

    def datagram_received(self, data: bytes, addr: Tuple[str, int]) -> None:
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(None, handle_datagram, data, self.session_factory)
        future.add_done_callback(_log_handler_failure)

    def error_received(self, exc: Exception) -> None:
        logger.warning(json.dumps({"event": "udp_error", "error": str(exc)}))


async def start_udp_listener(
    port: int, host: str = "0.0.0.0", session_factory: Callable[[], Session] = SessionLocal
) -> asyncio.DatagramTransport:
    loop = asyncio.get_running_loop()
    transport, _ = await loop.create_datagram_endpoint(
        lambda: TelemetryProtocol(session_factory), local_addr=(host, port)
    )
    logger.info(json.dumps({"event": "udp_listening", "host": host, "port": port}))
    return transport

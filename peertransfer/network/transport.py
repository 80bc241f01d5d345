"""Message channels the transfer core runs on top of"""

import asyncio
import inspect
import json
import struct
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union
import logging

logger = logging.getLogger(__name__)

MessageHandler = Callable[[str, Dict[str, Any]], Union[None, Awaitable[None]]]

MAX_FRAME_SIZE = 16 * 1024 * 1024


class Channel(ABC):
    """
    Ordered, reliable, message-oriented channel to one or more peers

    Implementations only move messages; establishing the underlying
    connection belongs to whoever constructs them.
    """

    def __init__(self):
        self._handler: Optional[MessageHandler] = None

    @abstractmethod
    def send(self, peer_id: str, message: Dict[str, Any]) -> Union[bool, Awaitable[bool]]:
        """True iff the channel accepted the message (not a delivery receipt)"""

    def set_message_handler(self, handler: Optional[MessageHandler]):
        self._handler = handler

    async def deliver(self, peer_id: str, message: Any):
        """Hand an inbound message to the registered handler"""
        if self._handler is None:
            logger.warning(f"Dropping message from {peer_id}: no handler registered")
            return
        result = self._handler(peer_id, message)
        if inspect.isawaitable(result):
            await result


class LoopbackChannel(Channel):
    """
    In-process channel between two local endpoints

    Messages are JSON round-tripped so they look exactly like what a
    real channel would carry, and delivered inline in send order.
    """

    def __init__(self, local_id: str):
        super().__init__()
        self.local_id = local_id
        self.remote: Optional["LoopbackChannel"] = None
        self.connected = True
        self.sent: List[Tuple[str, Dict[str, Any]]] = []

    @classmethod
    def pair(cls, first_id: str, second_id: str) -> Tuple["LoopbackChannel", "LoopbackChannel"]:
        first = cls(first_id)
        second = cls(second_id)
        first.remote = second
        second.remote = first
        return first, second

    async def send(self, peer_id: str, message: Dict[str, Any]) -> bool:
        if not self.connected or self.remote is None:
            logger.debug(f"Loopback {self.local_id} not connected")
            return False
        if peer_id != self.remote.local_id:
            logger.debug(f"Loopback {self.local_id} has no peer {peer_id}")
            return False

        wire = json.loads(json.dumps(message))
        self.sent.append((peer_id, wire))
        await self.remote.deliver(self.local_id, wire)
        return True


class StreamChannel(Channel):
    """
    Channel to a single peer over an already connected asyncio stream
    Frames are 4-byte big-endian length prefixed JSON
    """

    def __init__(self, peer_id: str, reader: asyncio.StreamReader,
                 writer: asyncio.StreamWriter):
        super().__init__()
        self.peer_id = peer_id
        self.reader = reader
        self.writer = writer
        self._write_lock = asyncio.Lock()

    async def send(self, peer_id: str, message: Dict[str, Any]) -> bool:
        if peer_id != self.peer_id:
            logger.error(f"StreamChannel for {self.peer_id} cannot reach {peer_id}")
            return False

        msg_bytes = json.dumps(message).encode('utf-8')
        if len(msg_bytes) > MAX_FRAME_SIZE:
            logger.error(f"Message of {len(msg_bytes)} bytes exceeds frame limit")
            return False

        try:
            length_prefix = struct.pack('!I', len(msg_bytes))
            async with self._write_lock:
                self.writer.write(length_prefix + msg_bytes)
                await self.writer.drain()
            return True
        except (ConnectionError, OSError) as e:
            logger.error(f"Error sending message to {self.peer_id}: {e}")
            return False

    async def recv_message(self) -> Optional[Dict[str, Any]]:
        """Read one frame, None on clean EOF"""
        try:
            length_bytes = await self.reader.readexactly(4)
        except asyncio.IncompleteReadError as e:
            if e.partial:
                logger.error(f"Truncated frame header from {self.peer_id}")
            return None

        msg_length = struct.unpack('!I', length_bytes)[0]
        if msg_length > MAX_FRAME_SIZE:
            raise ConnectionError(f"Frame of {msg_length} bytes exceeds limit")

        msg_bytes = await self.reader.readexactly(msg_length)
        return json.loads(msg_bytes.decode('utf-8'))

    async def run(self):
        """Deliver inbound frames until the peer closes the stream"""
        while True:
            try:
                message = await self.recv_message()
            except asyncio.IncompleteReadError as e:
                logger.error(f"Incomplete read from {self.peer_id}: {e}")
                break
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                logger.warning(f"Undecodable frame from {self.peer_id}: {e}")
                continue

            if message is None:
                logger.info(f"Peer {self.peer_id} closed the stream")
                break

            try:
                await self.deliver(self.peer_id, message)
            except Exception as e:
                logger.error(f"Error handling message from {self.peer_id}: {e}", exc_info=True)

    async def close(self):
        self.writer.close()
        await self.writer.wait_closed()

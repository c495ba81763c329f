# deptxfer/common/wire.py
# Explicit message framing over a stream socket, shared by server and client.

import socket       # timeout type for blocking reads
import struct       # 4-byte big-endian length field
import time         # payload and lingering close deadlines

from deptxfer.common.constants import (
    CHUNK_SIZE,
    ENC,
    LENGTH_FORMAT,
    LENGTH_SIZE,
    LINE_END,
    MAX_FILE_SIZE,
)

# Server replies can carry a 255-byte file name plus fixed text.
MAX_REPLY_BYTES = 1024

# After a final reply, unread client bytes are drained for a short while so the
# close does not reset the connection before the reply is read.
CLOSE_LINGER_SECONDS = 1.0
MAX_DRAIN_BYTES = 4 * 1024 * 1024


#### Errors ####
class WireError(Exception):
    """Base class for framing and transport failures on one connection."""

    def __init__(self, reason):
        super().__init__(reason)
        self.reason = reason


class PeerConnectionError(WireError, ConnectionError):
    """Peer closed the stream, or a read/write failed or timed out."""


class FramingError(WireError):
    """A message broke the framing rules (too long, undecodable)."""


#### Stream wrapper ####
class MessageStream:
    """
    Buffered reader/writer for the transfer protocol.

    Text messages are UTF-8 lines terminated by '\\n'. The file length is a
    4-byte big-endian unsigned integer, followed by the raw payload.

    Bytes read past the end of one message stay in the internal buffer, so
    a client may send every message back to back without any pause.
    """

    def __init__(self, conn, chunk_size=CHUNK_SIZE):
        self.conn = conn
        self.chunk_size = chunk_size
        self._buf = bytearray()

    #### Receiving ####
    def _recv(self, limit):
        """
        Read up to `limit` bytes straight from the socket.

        Raises:
            PeerConnectionError: On EOF, timeout, or socket error.
        """
        try:
            chunk = self.conn.recv(limit)
        except socket.timeout as exc:
            raise PeerConnectionError("Timed out waiting for data") from exc
        except OSError as exc:
            raise PeerConnectionError(f"Receive failed: {exc}") from exc

        if not chunk:
            raise PeerConnectionError("Connection closed by peer")
        return chunk

    def _recv_some(self, limit):
        """Return buffered bytes first, then fresh socket data (at most `limit`)."""
        if self._buf:
            data = bytes(self._buf[:limit])
            del self._buf[:limit]
            return data
        return self._recv(limit)

    def recv_line(self, max_bytes, what="Message"):
        """
        Read one newline-terminated text message.

        Parameters:
            max_bytes (int): Content limit, not counting the terminator.
            what (str): Message name used in error text.

        Returns:
            str: Decoded message without its line terminator.

        Raises:
            PeerConnectionError: Stream ended before the terminator.
            FramingError: Message too long or not valid UTF-8.
        """
        while True:
            idx = self._buf.find(LINE_END)
            if idx != -1:
                raw = bytes(self._buf[:idx])
                del self._buf[:idx + 1]
                break
            # Allow one extra byte for an optional '\r'.
            if len(self._buf) > max_bytes + 1:
                raise FramingError(f"{what} too long")
            self._buf.extend(self._recv(self.chunk_size))

        if raw.endswith(b"\r"):
            raw = raw[:-1]
        if len(raw) > max_bytes:
            raise FramingError(f"{what} too long")

        try:
            return raw.decode(ENC)
        except UnicodeDecodeError as exc:
            raise FramingError(f"{what} is not valid text") from exc

    def recv_exact(self, count):
        """Read exactly `count` bytes or raise PeerConnectionError."""
        while len(self._buf) < count:
            self._buf.extend(self._recv(min(self.chunk_size, count - len(self._buf))))
        data = bytes(self._buf[:count])
        del self._buf[:count]
        return data

    def recv_length(self):
        """Read the 4-byte big-endian file length."""
        (length,) = struct.unpack(LENGTH_FORMAT, self.recv_exact(LENGTH_SIZE))
        return length

    def iter_payload(self, length, deadline=None):
        """
        Yield the next `length` payload bytes in chunks of at most chunk_size.

        Parameters:
            length (int): Payload size in bytes.
            deadline (float | None): time.monotonic() value by which the whole
                payload must have arrived. Each read waits at most until then,
                so a peer trickling bytes cannot stretch the transfer.

        Raises:
            PeerConnectionError: If the stream ends before `length` bytes, or
                the deadline passes.
        """
        io_timeout = self.conn.gettimeout() if deadline is not None else None
        remaining = length
        try:
            while remaining > 0:
                if deadline is not None:
                    left = deadline - time.monotonic()
                    if left <= 0:
                        raise PeerConnectionError("Timed out waiting for data")
                    if io_timeout is None or left < io_timeout:
                        self.conn.settimeout(left)
                chunk = self._recv_some(min(self.chunk_size, remaining))
                remaining -= len(chunk)
                yield chunk
        finally:
            if deadline is not None:
                try:
                    self.conn.settimeout(io_timeout)
                except OSError:
                    pass

    #### Sending ####
    def send_bytes(self, data):
        """Send raw bytes, raising PeerConnectionError on failure."""
        try:
            self.conn.sendall(data)
        except socket.timeout as exc:
            raise PeerConnectionError("Timed out sending data") from exc
        except OSError as exc:
            raise PeerConnectionError(f"Send failed: {exc}") from exc

    def send_line(self, text):
        """Send one text message followed by '\\n'."""
        self.send_bytes(text.rstrip("\n").encode(ENC) + LINE_END)

    def send_length(self, length):
        """Send the 4-byte big-endian file length."""
        if not 0 <= length <= MAX_FILE_SIZE:
            raise ValueError(f"Length {length} does not fit in 4 bytes")
        self.send_bytes(struct.pack(LENGTH_FORMAT, length))

    def send_line_quietly(self, text):
        """
        Best-effort send used for error replies.

        Returns:
            bool: True if the line was sent, False if sending failed.
        """
        try:
            self.send_line(text)
            return True
        except PeerConnectionError:
            return False

    #### Lifecycle ####
    def _drain(self, linger):
        """Discard incoming bytes until EOF, the linger deadline, or the byte cap."""
        deadline = time.monotonic() + linger
        drained = 0
        try:
            while drained < MAX_DRAIN_BYTES:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                self.conn.settimeout(remaining)
                chunk = self.conn.recv(self.chunk_size)
                if not chunk:
                    break
                drained += len(chunk)
        except OSError:
            # Peer already gone; nothing left to drain.
            pass

    def close(self, linger=CLOSE_LINGER_SECONDS):
        """
        Close the connection, ignoring errors on a dead peer.

        Parameters:
            linger (float): Seconds to keep reading (and discarding) what the
                peer is still sending after our write side is shut down.
                Zero closes immediately.
        """
        try:
            self.conn.shutdown(socket.SHUT_WR)
        except OSError:
            pass
        else:
            if linger > 0:
                self._drain(linger)
        try:
            self.conn.close()
        except OSError:
            pass

"""
Unix domain socket IPC protocol

JSON request/response messages between the whisprlocal daemon and its
clients (CLI, hotkey binders, editors polling for transcripts).
"""

import json
import logging
import os
import socket
import struct
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

# Frame = big-endian uint32 payload length + UTF-8 JSON payload
_HEADER = struct.Struct(">I")
MAX_MESSAGE_SIZE = 1024 * 1024

# Commands understood by the server
SESSION_COMMANDS = ("begin", "end", "toggle", "cancel")
HISTORY_COMMANDS = ("history", "set", "get")
MODEL_COMMANDS = ("status", "models", "download", "cancel-download", "activate", "delete")
COMMANDS = SESSION_COMMANDS + HISTORY_COMMANDS + MODEL_COMMANDS

# Request field carrying each command's single argument
ARGUMENT_FIELDS = {
    "set": "uid",
    "get": "uid",
    "download": "model",
    "activate": "filename",
    "delete": "filename",
}


def create_server_socket(socket_path: Path) -> socket.socket:
    """
    Create and bind a Unix domain socket for the server

    Args:
        socket_path: Path to the socket file

    Returns:
        Bound socket ready for listening
    """
    if socket_path.exists():
        socket_path.unlink()
    socket_path.parent.mkdir(parents=True, exist_ok=True)

    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    sock.bind(str(socket_path))

    # Owner read/write only
    os.chmod(socket_path, 0o600)

    return sock


def create_client_socket(socket_path: Path, timeout: Optional[float] = None) -> socket.socket:
    """
    Create and connect a Unix domain socket for the client

    Raises:
        ConnectionError: If server is not running
    """
    if not socket_path.exists():
        raise ConnectionError(f"Server socket not found: {socket_path}")

    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    sock.settimeout(timeout)
    sock.connect(str(socket_path))

    return sock


def encode_frame(message: Dict[str, Any]) -> bytes:
    """Serialize a message into one length-prefixed frame"""
    payload = json.dumps(message).encode('utf-8')
    if len(payload) > MAX_MESSAGE_SIZE:
        raise ValueError(f"Message too large: {len(payload)} bytes")
    return _HEADER.pack(len(payload)) + payload


def send_message(sock: socket.socket, message: Dict[str, Any]) -> None:
    sock.sendall(encode_frame(message))


def recv_message(sock: socket.socket) -> Optional[Dict[str, Any]]:
    """
    Read one frame

    Returns:
        Parsed message, or None if the peer closed mid-frame or before one

    Raises:
        ValueError: Oversized frame or malformed JSON
    """
    header = _recv_exact(sock, _HEADER.size)
    if header is None:
        return None

    (length,) = _HEADER.unpack(header)
    if length > MAX_MESSAGE_SIZE:
        raise ValueError(f"Message too large: {length} bytes")

    payload = _recv_exact(sock, length)
    if payload is None:
        return None
    return json.loads(payload.decode('utf-8'))


def _recv_exact(sock: socket.socket, size: int) -> Optional[bytes]:
    buf = bytearray()
    while len(buf) < size:
        chunk = sock.recv(size - len(buf))
        if not chunk:
            return None
        buf.extend(chunk)
    return bytes(buf)


# Request/Response helpers

def make_request(command: str, **fields: Any) -> Dict[str, Any]:
    """Create a command request; None-valued fields are omitted"""
    request: Dict[str, Any] = {"command": command}
    request.update({k: v for k, v in fields.items() if v is not None})
    return request


def make_ok_response(**data: Any) -> Dict[str, Any]:
    """Create a success response"""
    response: Dict[str, Any] = {"status": "ok"}
    response.update(data)
    return response


def make_error_response(message: str, kind: str = "error") -> Dict[str, Any]:
    """Create an error response"""
    return {"status": "error", "message": message, "kind": kind}

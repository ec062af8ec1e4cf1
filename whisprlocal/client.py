"""
whisprlocal client

CLI client for communicating with the whisprlocal server.
"""

import json
import logging
from typing import Any, Dict, Optional

from whisprlocal.config import Config
from whisprlocal.ipc import (
    ARGUMENT_FIELDS,
    create_client_socket,
    make_request,
    recv_message,
    send_message,
)

logger = logging.getLogger(__name__)

# Exit codes
EXIT_SUCCESS = 0
EXIT_ERROR = 1
EXIT_USAGE = 2


def send_request(config: Config, request: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Send one request and wait for the response

    Args:
        config: Configuration
        request: Request message

    Returns:
        Response dictionary, or None if the server could not be reached
    """
    socket_path = config.get_socket_path()

    try:
        sock = create_client_socket(socket_path)
    except (ConnectionError, OSError) as e:
        logger.error(f"Cannot connect to server: {e}")
        return None

    try:
        send_message(sock, request)
        response = recv_message(sock)
        if not response:
            logger.error("No response from server")
        return response
    except (OSError, ValueError) as e:
        logger.error(f"Communication error: {e}")
        return None
    finally:
        sock.close()


def client_command(config: Config, command: str, argument: Optional[str] = None) -> int:
    """
    Run one server command and print its result

    Args:
        config: Configuration
        command: Server command name
        argument: Value for the command's argument field, if it takes one

    Returns:
        Exit code
    """
    field = ARGUMENT_FIELDS.get(command)
    if field and not argument:
        logger.error(f"'{command}' requires a {field} argument")
        return EXIT_USAGE

    fields = {field: argument} if field else {}
    response = send_request(config, make_request(command, **fields))
    if response is None:
        return EXIT_ERROR

    if response.get("status") != "ok":
        logger.error(f"Server error: {response.get('message', 'unknown')}")
        return EXIT_ERROR

    print_response(command, response)
    return EXIT_SUCCESS


def print_response(command: str, response: Dict[str, Any]) -> None:
    """Write a successful response to stdout in a command-appropriate form"""
    if command in ("get", "end", "toggle"):
        # Print text to stdout (nothing if no new text)
        text = response.get("text", "")
        if text:
            print(text)

    elif command == "history":
        for entry in response.get("entries", []):
            print(json.dumps(entry))

    elif command == "models":
        active = response.get("active")
        for model in response.get("installed", []):
            marker = "*" if model["filename"] == active else " "
            sidecar = " (+coreml)" if model.get("sidecar") else ""
            print(f"{marker} {model['filename']}{sidecar}")

    elif command == "status":
        payload = {k: v for k, v in response.items() if k != "status"}
        print(json.dumps(payload, indent=2))

    elif command == "download":
        print(f"Downloading {response.get('downloading')}")

    elif command == "cancel-download":
        print("Cancelled" if response.get("cancelled") else "No download in progress")

    elif command == "activate":
        print(f"Active: {response.get('active')}")

    elif command == "delete":
        print(f"Deleted {response.get('deleted')}")

"""
inject_message.py - Inject messages into a running node over HTTP

A node exposes an RPC endpoint at {url}/rpc:sys:uqbar/message. A POST with
the JSON body built by make_message() is delivered to the named process as
a Request; the HTTP reply carries that process's Response.

Reply body:
    {"ipc": "<response ipc as text>", "payload": {"mime": ..., "bytes": ...} | null}
"""

import base64
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Union

import requests

logger = logging.getLogger('inject_message')

RPC_PATH = "rpc:sys:uqbar/message"


class InjectMessageError(Exception):
    """Raised when a node rejects an injected message or replies garbage."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


@dataclass
class InjectResponse:
    ipc: Optional[str]
    payload: Optional[Dict[str, Any]] = None


def make_message(process: str, ipc: str, node: Optional[str] = None,
                 raw_bytes: Optional[bytes] = None,
                 bytes_path: Optional[Union[str, Path]] = None) -> Dict[str, Any]:
    """
    Build the JSON body of an injected request.

    Args:
        process: Target process id, e.g. "tester:tester:uqbar"
        ipc: Request IPC (usually JSON text)
        node: Target node name (default: the node serving the endpoint)
        raw_bytes: Payload bytes to attach
        bytes_path: File whose contents to attach (ignored if raw_bytes given)

    Raises:
        OSError: If bytes_path can't be read
    """
    data = raw_bytes
    if data is None and bytes_path is not None:
        with open(bytes_path, 'rb') as f:
            data = f.read()

    return {
        'process': process,
        'node': node,
        'inherit': False,
        'expects_response': None,
        'ipc': ipc,
        'metadata': None,
        'context': None,
        'mime': 'application/octet-stream',
        'data': base64.b64encode(data).decode('ascii') if data is not None else None,
    }


def send_request(url: str, body: Dict[str, Any],
                 timeout: Optional[float] = None) -> requests.Response:
    """
    POST an injected message to a node.

    Args:
        url: Node base URL, e.g. "http://localhost:8080"
        body: Message body from make_message()
        timeout: Seconds to wait for the reply (None waits forever)

    Raises:
        requests.RequestException: On connection failures or timeouts
    """
    endpoint = f"{url.rstrip('/')}/{RPC_PATH}"
    logger.debug(f"POST {endpoint} process={body.get('process')}")
    return requests.post(endpoint, json=body, timeout=timeout)


def parse_response(response: requests.Response) -> InjectResponse:
    """
    Extract the process response from the node's HTTP reply.

    Raises:
        InjectMessageError: On non-200 status or a malformed body
    """
    if response.status_code != 200:
        raise InjectMessageError(
            f"Node replied HTTP {response.status_code}: {response.text[:200]}",
            status_code=response.status_code,
        )

    try:
        body = response.json()
    except ValueError as e:
        raise InjectMessageError(f"Node reply is not JSON: {e}", status_code=200)

    if not isinstance(body, dict):
        raise InjectMessageError(f"Node reply must be a JSON object, got {type(body).__name__}",
                                 status_code=200)

    ipc = body.get('ipc')
    if isinstance(ipc, list):
        ipc = bytes(ipc).decode('utf-8', errors='replace')
    elif ipc is not None and not isinstance(ipc, str):
        ipc = json.dumps(ipc)

    return InjectResponse(ipc=ipc, payload=body.get('payload'))


def execute(url: str, process: str, ipc: str, node: Optional[str] = None,
            bytes_path: Optional[str] = None) -> InjectResponse:
    """Inject one message and print the response (CLI inject-message)."""
    body = make_message(process, ipc, node=node, bytes_path=bytes_path)
    response = parse_response(send_request(url, body))
    print(f"Response from {process}:")
    print(f"  ipc: {response.ipc}")
    if response.payload is not None:
        print(f"  payload: {response.payload}")
    return response

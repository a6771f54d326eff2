"""
kernel_types.py - Message bus envelope types

JSON shapes match the node runtime's serde encoding:
- enums are externally tagged: {"Request": {...}}, {"Response": [{...}, ctx]}
- byte strings are arrays of integers
- ProcessId is the string "process:package:publisher"

Decoding ignores unknown fields so newer runtimes don't break the harness.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional


class DecodeError(ValueError):
    """Raised when a bus message doesn't have the expected shape."""
    pass


def bytes_to_json(data: Optional[bytes]) -> Optional[List[int]]:
    if data is None:
        return None
    return list(data)


def bytes_from_json(value: Any, name: str) -> bytes:
    if isinstance(value, str):
        return value.encode('utf-8')
    if not isinstance(value, list):
        raise DecodeError(f"{name} must be a byte array, got {type(value).__name__}")
    try:
        return bytes(value)
    except (TypeError, ValueError) as e:
        raise DecodeError(f"{name} is not a valid byte array: {e}")


def _object(data: Any, kind: str) -> Dict[str, Any]:
    if not isinstance(data, dict):
        raise DecodeError(f"{kind} must be an object, got {type(data).__name__}")
    return data


def _field(data: Dict[str, Any], key: str, kind: str) -> Any:
    _object(data, kind)
    if key not in data:
        raise DecodeError(f"{kind} missing field '{key}'")
    return data[key]


@dataclass(frozen=True)
class ProcessId:
    process_name: str
    package_name: str
    publisher_node: str

    def __str__(self) -> str:
        return f"{self.process_name}:{self.package_name}:{self.publisher_node}"

    @staticmethod
    def parse(value: str) -> 'ProcessId':
        if not isinstance(value, str):
            raise DecodeError(f"ProcessId must be a string, got {type(value).__name__}")
        parts = value.split(':')
        if len(parts) != 3 or not all(parts):
            raise DecodeError(f"ProcessId must look like 'process:package:publisher', got '{value}'")
        return ProcessId(*parts)


@dataclass(frozen=True)
class Address:
    node: str
    process: ProcessId

    def __str__(self) -> str:
        return f"{self.node}@{self.process}"

    def to_dict(self) -> Dict[str, Any]:
        return {'node': self.node, 'process': str(self.process)}

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> 'Address':
        return Address(
            node=_field(data, 'node', 'Address'),
            process=ProcessId.parse(_field(data, 'process', 'Address')),
        )


@dataclass
class Payload:
    mime: Optional[str]
    bytes: bytes

    def to_dict(self) -> Dict[str, Any]:
        return {'mime': self.mime, 'bytes': bytes_to_json(self.bytes)}

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> 'Payload':
        data = _object(data, 'Payload')
        return Payload(
            mime=data.get('mime'),
            bytes=bytes_from_json(_field(data, 'bytes', 'Payload'), 'Payload.bytes'),
        )


@dataclass
class SignedCapability:
    issuer: Address
    params: str
    signature: bytes

    def to_dict(self) -> Dict[str, Any]:
        return {
            'issuer': self.issuer.to_dict(),
            'params': self.params,
            'signature': bytes_to_json(self.signature),
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> 'SignedCapability':
        return SignedCapability(
            issuer=Address.from_dict(_field(data, 'issuer', 'SignedCapability')),
            params=_field(data, 'params', 'SignedCapability'),
            signature=bytes_from_json(
                _field(data, 'signature', 'SignedCapability'), 'SignedCapability.signature'
            ),
        )


@dataclass
class Request:
    inherit: bool
    expects_response: Optional[int]
    ipc: bytes
    metadata: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'inherit': self.inherit,
            'expects_response': self.expects_response,
            'ipc': bytes_to_json(self.ipc),
            'metadata': self.metadata,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> 'Request':
        data = _object(data, 'Request')
        return Request(
            inherit=bool(data.get('inherit', False)),
            expects_response=data.get('expects_response'),
            ipc=bytes_from_json(_field(data, 'ipc', 'Request'), 'Request.ipc'),
            metadata=data.get('metadata'),
        )


@dataclass
class Response:
    inherit: bool
    ipc: bytes
    metadata: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'inherit': self.inherit,
            'ipc': bytes_to_json(self.ipc),
            'metadata': self.metadata,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> 'Response':
        data = _object(data, 'Response')
        return Response(
            inherit=bool(data.get('inherit', False)),
            ipc=bytes_from_json(_field(data, 'ipc', 'Response'), 'Response.ipc'),
            metadata=data.get('metadata'),
        )


@dataclass
class Message:
    """
    A Request, or a Response with optional context.

    Exactly one of request/response is set.
    """
    request: Optional[Request] = None
    response: Optional[Response] = None
    context: Optional[bytes] = None

    def __post_init__(self):
        if (self.request is None) == (self.response is None):
            raise ValueError("Message must hold exactly one of request or response")

    @property
    def is_request(self) -> bool:
        return self.request is not None

    def to_dict(self) -> Dict[str, Any]:
        if self.request is not None:
            return {'Request': self.request.to_dict()}
        return {'Response': [self.response.to_dict(), bytes_to_json(self.context)]}

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> 'Message':
        if not isinstance(data, dict) or len(data) != 1:
            raise DecodeError("Message must be an object tagged Request or Response")

        (tag, body), = data.items()
        if tag == 'Request':
            return Message(request=Request.from_dict(body))
        elif tag == 'Response':
            if not isinstance(body, list) or len(body) != 2:
                raise DecodeError("Response must be a [response, context] pair")
            response, context = body
            return Message(
                response=Response.from_dict(response),
                context=bytes_from_json(context, 'context') if context is not None else None,
            )
        raise DecodeError(f"Unknown Message variant '{tag}'")


@dataclass
class KernelMessage:
    """Envelope for all traffic on the message bus."""
    id: int
    source: Address
    target: Address
    rsvp: Optional[Address]
    message: Message
    payload: Optional[Payload] = None
    signed_capabilities: Optional[List[SignedCapability]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'source': self.source.to_dict(),
            'target': self.target.to_dict(),
            'rsvp': self.rsvp.to_dict() if self.rsvp else None,
            'message': self.message.to_dict(),
            'payload': self.payload.to_dict() if self.payload else None,
            'signed_capabilities': (
                [c.to_dict() for c in self.signed_capabilities]
                if self.signed_capabilities is not None else None
            ),
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> 'KernelMessage':
        data = _object(data, 'KernelMessage')
        message_id = _field(data, 'id', 'KernelMessage')
        if not isinstance(message_id, int) or message_id < 0:
            raise DecodeError(f"KernelMessage.id must be a non-negative integer, got {message_id!r}")

        rsvp = data.get('rsvp')
        payload = data.get('payload')
        capabilities = data.get('signed_capabilities')
        return KernelMessage(
            id=message_id,
            source=Address.from_dict(_field(data, 'source', 'KernelMessage')),
            target=Address.from_dict(_field(data, 'target', 'KernelMessage')),
            rsvp=Address.from_dict(rsvp) if rsvp is not None else None,
            message=Message.from_dict(_field(data, 'message', 'KernelMessage')),
            payload=Payload.from_dict(payload) if payload is not None else None,
            signed_capabilities=(
                [SignedCapability.from_dict(c) for c in capabilities]
                if capabilities is not None else None
            ),
        )

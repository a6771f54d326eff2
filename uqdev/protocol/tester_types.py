"""
tester_types.py - Tester request/response vocabulary

Messages exchanged between the harness and the tester process running on
the master node. Encoded as JSON IPC bytes with serde's externally tagged
enum layout:

    TesterRequest:
        {"Run": {"input_node_names": [...], "test_timeout": 10}}
        {"KernelMessage": {...KernelMessage...}}
        {"GetFullMessage": {...Message...}}

    TesterResponse:
        "Pass"
        {"Fail": {"test": "...", "file": "...", "line": 42, "column": 5}}
        {"GetFullMessage": null | {...KernelMessage...}}

    TesterError:
        "RejectForeign" | "UnexpectedResponse"
        {"Fail": {"test": "...", "message": "..."}}

Unknown object fields are ignored when decoding.
"""

import inspect
import json
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Union

from uqdev.protocol.kernel_types import DecodeError, KernelMessage, Message


def _loads(data: Union[str, bytes, Any]) -> Any:
    if isinstance(data, (bytes, bytearray)):
        data = data.decode('utf-8')
    if isinstance(data, str):
        try:
            return json.loads(data)
        except json.JSONDecodeError as e:
            raise DecodeError(f"Invalid JSON: {e}")
    return data


def _split_tag(data: Any, kind: str):
    """Return (tag, body) for a serde externally tagged value."""
    if isinstance(data, str):
        return data, None
    if isinstance(data, dict) and len(data) == 1:
        (tag, body), = data.items()
        return tag, body
    raise DecodeError(f"{kind} must be a variant name or a single-key object, got {data!r}")


def _require(body: Any, key: str, kind: str) -> Any:
    if not isinstance(body, dict) or key not in body:
        raise DecodeError(f"{kind} missing field '{key}'")
    return body[key]


def _is_unsigned(value: Any) -> bool:
    # bool is an int subclass but never a valid count
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


class _Variant:
    """Common JSON helpers for the tagged variants below."""

    __test__ = False

    def to_dict(self) -> Any:
        raise NotImplementedError

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    def to_bytes(self) -> bytes:
        return self.to_json().encode('utf-8')


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------

class TesterRequest(_Variant):
    """Base class of requests sent to the tester process."""

    @staticmethod
    def decode(data: Union[str, bytes, Any]) -> 'TesterRequest':
        """
        Decode a TesterRequest from JSON text, bytes or a parsed value.

        Raises:
            DecodeError: On malformed input or unknown variants
        """
        tag, body = _split_tag(_loads(data), 'TesterRequest')

        if tag == 'Run':
            names = _require(body, 'input_node_names', 'Run')
            timeout = _require(body, 'test_timeout', 'Run')
            if not isinstance(names, list) or not all(isinstance(n, str) for n in names):
                raise DecodeError("Run.input_node_names must be a list of strings")
            if not _is_unsigned(timeout):
                raise DecodeError(f"Run.test_timeout must be a non-negative integer, got {timeout!r}")
            return RunRequest(input_node_names=names, test_timeout=timeout)
        elif tag == 'KernelMessage':
            return KernelMessageRequest(KernelMessage.from_dict(body))
        elif tag == 'GetFullMessage':
            return GetFullMessageRequest(Message.from_dict(body))

        raise DecodeError(f"Unknown TesterRequest variant '{tag}'")


@dataclass
class RunRequest(TesterRequest):
    """Ask the tester to run every loaded test package."""
    input_node_names: List[str]
    test_timeout: int

    def to_dict(self) -> Dict[str, Any]:
        return {'Run': {
            'input_node_names': list(self.input_node_names),
            'test_timeout': self.test_timeout,
        }}


@dataclass
class KernelMessageRequest(TesterRequest):
    kernel_message: KernelMessage

    def to_dict(self) -> Dict[str, Any]:
        return {'KernelMessage': self.kernel_message.to_dict()}


@dataclass
class GetFullMessageRequest(TesterRequest):
    message: Message

    def to_dict(self) -> Dict[str, Any]:
        return {'GetFullMessage': self.message.to_dict()}


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------

class TesterResponse(_Variant):
    """Base class of responses sent back by the tester process."""

    @staticmethod
    def decode(data: Union[str, bytes, Any]) -> 'TesterResponse':
        """
        Decode a TesterResponse from JSON text, bytes or a parsed value.

        Raises:
            DecodeError: On malformed input or unknown variants
        """
        tag, body = _split_tag(_loads(data), 'TesterResponse')

        if tag == 'Pass':
            return Pass()
        elif tag == 'Fail':
            test = _require(body, 'test', 'Fail')
            file = _require(body, 'file', 'Fail')
            line = _require(body, 'line', 'Fail')
            column = _require(body, 'column', 'Fail')
            if not isinstance(test, str) or not isinstance(file, str):
                raise DecodeError("Fail.test and Fail.file must be strings")
            if not _is_unsigned(line) or not _is_unsigned(column):
                raise DecodeError("Fail.line and Fail.column must be non-negative integers")
            return Fail(
                test=test,
                file=file,
                line=line,
                column=column,
            )
        elif tag == 'GetFullMessage':
            return GetFullMessageResponse(
                KernelMessage.from_dict(body) if body is not None else None
            )

        raise DecodeError(f"Unknown TesterResponse variant '{tag}'")


@dataclass
class Pass(TesterResponse):

    def to_dict(self) -> str:
        return 'Pass'


@dataclass
class Fail(TesterResponse):
    """Assertion failure with the source location of the failing check."""
    test: str
    file: str
    line: int
    column: int

    def to_dict(self) -> Dict[str, Any]:
        return {'Fail': {
            'test': self.test,
            'file': self.file,
            'line': self.line,
            'column': self.column,
        }}

    def __str__(self) -> str:
        return f"FAIL {self.test} {self.file}:{self.line}:{self.column}"


@dataclass
class GetFullMessageResponse(TesterResponse):
    kernel_message: Optional[KernelMessage]

    def to_dict(self) -> Dict[str, Any]:
        return {'GetFullMessage': (
            self.kernel_message.to_dict() if self.kernel_message is not None else None
        )}


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class TesterError(Exception):
    """
    Error variants the tester can return instead of a response.

    kind is one of REJECT_FOREIGN, UNEXPECTED_RESPONSE, FAIL; test and
    message are only set for FAIL.
    """

    __test__ = False

    REJECT_FOREIGN = 'RejectForeign'
    UNEXPECTED_RESPONSE = 'UnexpectedResponse'
    FAIL = 'Fail'

    def __init__(self, kind: str, test: Optional[str] = None, message: Optional[str] = None):
        if kind not in (self.REJECT_FOREIGN, self.UNEXPECTED_RESPONSE, self.FAIL):
            raise ValueError(f"Unknown TesterError kind '{kind}'")
        self.kind = kind
        self.test = test
        self.message = message
        if kind == self.FAIL:
            super().__init__(f"FAIL {test} {message}")
        else:
            super().__init__(kind)

    def to_dict(self) -> Any:
        if self.kind == self.FAIL:
            return {'Fail': {'test': self.test, 'message': self.message}}
        return self.kind

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def decode(cls, data: Union[str, bytes, Any]) -> 'TesterError':
        tag, body = _split_tag(_loads(data), 'TesterError')
        if tag in (cls.REJECT_FOREIGN, cls.UNEXPECTED_RESPONSE):
            return cls(tag)
        elif tag == cls.FAIL:
            return cls(
                cls.FAIL,
                test=str(_require(body, 'test', 'TesterError.Fail')),
                message=str(_require(body, 'message', 'TesterError.Fail')),
            )
        raise DecodeError(f"Unknown TesterError variant '{tag}'")


# ---------------------------------------------------------------------------
# Failure reporting (test-package side)
# ---------------------------------------------------------------------------

class FailReported(Exception):
    """Raised by fail() after the Fail response went out; ends the test path."""

    def __init__(self, response: Fail):
        self.response = response
        super().__init__(str(response))


def fail(test: str, send: Callable[[bytes], Any], file: Optional[str] = None,
         line: Optional[int] = None, column: Optional[int] = None):
    """
    Report a failing test and stop the current execution path.

    Builds a Fail response for `test` carrying the caller's source location
    (unless file/line/column are given), passes its IPC bytes to `send`, then
    raises FailReported. The harness treats the Fail as final.

    Usage:
        if balance != expected:
            fail("transfer_updates_balance", respond)
    """
    if file is None or line is None or column is None:
        frame = inspect.currentframe().f_back
        try:
            info = inspect.getframeinfo(frame)
            positions = getattr(info, 'positions', None)
            if file is None:
                file = info.filename
            if line is None:
                line = info.lineno
            if column is None:
                col_offset = positions.col_offset if positions is not None else None
                column = col_offset + 1 if col_offset is not None else 0
        finally:
            del frame

    response = Fail(test=test, file=file, line=line, column=column)
    send(response.to_bytes())
    raise FailReported(response)

"""
uqdev.protocol - Message bus and tester wire types

JSON codecs for the envelope (KernelMessage) and the tester
request/response vocabulary.
"""

from .kernel_types import (
    Address,
    DecodeError,
    KernelMessage,
    Message,
    Payload,
    ProcessId,
    Request,
    Response,
    SignedCapability,
)
from .tester_types import (
    Fail,
    FailReported,
    GetFullMessageRequest,
    GetFullMessageResponse,
    KernelMessageRequest,
    Pass,
    RunRequest,
    TesterError,
    TesterRequest,
    TesterResponse,
    fail,
)

__all__ = [
    'Address',
    'DecodeError',
    'KernelMessage',
    'Message',
    'Payload',
    'ProcessId',
    'Request',
    'Response',
    'SignedCapability',
    'Fail',
    'FailReported',
    'GetFullMessageRequest',
    'GetFullMessageResponse',
    'KernelMessageRequest',
    'Pass',
    'RunRequest',
    'TesterError',
    'TesterRequest',
    'TesterResponse',
    'fail',
]

#!/usr/bin/env python3
"""
test_tester_types.py - Unit Tests for the tester message vocabulary

Tests:
- Wire shapes of Run / Pass / Fail / TesterError
- Fail provenance (test, file, line, column) survives the wire unchanged
- Unknown fields ignored, unknown variants rejected
- fail() reports the caller's location and stops the execution path
"""

import json
import pytest
import sys
from pathlib import Path

# Add project root to path
_project_root = Path(__file__).parent.parent.parent
sys.path.insert(0, str(_project_root))

from uqdev.protocol import (
    DecodeError, Fail, FailReported, GetFullMessageRequest, GetFullMessageResponse,
    KernelMessage, KernelMessageRequest, Message, Pass, Request, RunRequest,
    TesterError, TesterRequest, TesterResponse, fail,
)


KERNEL_MESSAGE = {
    'id': 7,
    'source': {'node': 'first.uq', 'process': 'tester:tester:uqbar'},
    'target': {'node': 'second.uq', 'process': 'my_test:my_test:uqbar'},
    'rsvp': None,
    'message': {'Request': {'inherit': False, 'expects_response': 15, 'ipc': [123, 125], 'metadata': None}},
    'payload': None,
    'signed_capabilities': None,
}


class TestRequests:
    """Test TesterRequest encoding and decoding."""

    def test_run_wire_shape(self):
        run = RunRequest(input_node_names=["first.uq", "second.uq"], test_timeout=10)

        assert json.loads(run.to_json()) == {
            'Run': {'input_node_names': ['first.uq', 'second.uq'], 'test_timeout': 10}
        }
        assert TesterRequest.decode(run.to_bytes()) == run

    def test_run_rejects_bad_names(self):
        with pytest.raises(DecodeError):
            TesterRequest.decode({'Run': {'input_node_names': [1, 2], 'test_timeout': 10}})

    def test_run_rejects_boolean_timeout(self):
        with pytest.raises(DecodeError, match="test_timeout"):
            TesterRequest.decode({'Run': {'input_node_names': [], 'test_timeout': True}})

    def test_run_missing_timeout(self):
        with pytest.raises(DecodeError, match="test_timeout"):
            TesterRequest.decode({'Run': {'input_node_names': []}})

    def test_kernel_message_request(self):
        request = TesterRequest.decode({'KernelMessage': KERNEL_MESSAGE})

        assert isinstance(request, KernelMessageRequest)
        assert request.kernel_message.id == 7
        assert request.kernel_message.message.request.ipc == b'{}'

    def test_get_full_message_request(self):
        request = TesterRequest.decode(
            {'GetFullMessage': {'Request': {'inherit': True, 'expects_response': None, 'ipc': []}}}
        )

        assert isinstance(request, GetFullMessageRequest)
        assert request.message.request == Request(inherit=True, expects_response=None, ipc=b'')

    def test_unknown_variant(self):
        with pytest.raises(DecodeError, match="Unknown TesterRequest"):
            TesterRequest.decode('"Shutdown"')

    def test_unknown_fields_ignored(self):
        request = TesterRequest.decode(
            {'Run': {'input_node_names': ['a.uq'], 'test_timeout': 3, 'extra': True}}
        )
        assert request == RunRequest(['a.uq'], 3)


class TestResponses:
    """Test TesterResponse encoding and decoding."""

    def test_pass_is_bare_string(self):
        assert Pass().to_json() == '"Pass"'
        assert TesterResponse.decode(b'"Pass"') == Pass()

    def test_fail_round_trip_preserves_provenance(self):
        failure = Fail(test="foo", file="foo_test", line=42, column=5)

        decoded = TesterResponse.decode(failure.to_bytes())

        assert decoded == failure
        assert str(decoded) == "FAIL foo foo_test:42:5"

    def test_fail_ignores_unknown_fields(self):
        decoded = TesterResponse.decode(
            {'Fail': {'test': 't', 'file': 'f', 'line': 1, 'column': 2, 'backtrace': []}}
        )
        assert decoded == Fail('t', 'f', 1, 2)

    def test_fail_requires_integer_location(self):
        with pytest.raises(DecodeError):
            TesterResponse.decode({'Fail': {'test': 't', 'file': 'f', 'line': '1', 'column': 2}})

    @pytest.mark.parametrize("field, value", [
        ("line", True),
        ("column", False),
        ("line", -1),
        ("test", 7),
        ("file", None),
    ])
    def test_fail_rejects_mistyped_fields(self, field, value):
        body = {'test': 't', 'file': 'f', 'line': 1, 'column': 2}
        body[field] = value
        with pytest.raises(DecodeError, match=f"Fail.{field}"):
            TesterResponse.decode({'Fail': body})

    def test_get_full_message_none(self):
        response = TesterResponse.decode({'GetFullMessage': None})
        assert response == GetFullMessageResponse(None)
        assert response.to_dict() == {'GetFullMessage': None}

    def test_get_full_message_some(self):
        response = TesterResponse.decode({'GetFullMessage': KERNEL_MESSAGE})
        assert isinstance(response.kernel_message, KernelMessage)
        assert response.kernel_message.source.node == 'first.uq'

    def test_invalid_json(self):
        with pytest.raises(DecodeError, match="Invalid JSON"):
            TesterResponse.decode(b'{not json')

    def test_multi_key_object_rejected(self):
        with pytest.raises(DecodeError):
            TesterResponse.decode({'Pass': None, 'Fail': None})


class TestTesterError:
    """Test TesterError variants."""

    def test_unit_variants(self):
        assert TesterError.decode('"RejectForeign"').kind == TesterError.REJECT_FOREIGN
        assert TesterError.decode('"UnexpectedResponse"').kind == TesterError.UNEXPECTED_RESPONSE
        assert TesterError(TesterError.REJECT_FOREIGN).to_json() == '"RejectForeign"'

    def test_fail_variant(self):
        error = TesterError.decode({'Fail': {'test': 'foo', 'message': 'boom'}})

        assert error.kind == TesterError.FAIL
        assert error.test == 'foo'
        assert error.message == 'boom'
        assert str(error) == 'FAIL foo boom'
        assert error.to_dict() == {'Fail': {'test': 'foo', 'message': 'boom'}}

    def test_unknown_kind(self):
        with pytest.raises(ValueError):
            TesterError('Crashed')
        with pytest.raises(DecodeError):
            TesterError.decode('"Crashed"')


class TestFailHelper:
    """Test fail(): report, then end the path."""

    def test_reports_caller_location(self):
        sent = []

        with pytest.raises(FailReported) as excinfo:
            fail("balance_check", sent.append)

        response = excinfo.value.response
        assert response.test == "balance_check"
        assert response.file == __file__
        assert response.column == 13
        assert len(sent) == 1
        assert TesterResponse.decode(sent[0]) == response

    def test_line_is_the_call_site(self):
        sent = []

        def check():
            fail("inner", sent.append)

        with pytest.raises(FailReported) as excinfo:
            check()

        assert excinfo.value.response.line == check.__code__.co_firstlineno + 1

    def test_explicit_location(self):
        sent = []

        with pytest.raises(FailReported) as excinfo:
            fail("foo", sent.append, file="foo_test", line=42, column=5)

        assert excinfo.value.response == Fail("foo", "foo_test", 42, 5)
        assert json.loads(sent[0]) == {
            'Fail': {'test': 'foo', 'file': 'foo_test', 'line': 42, 'column': 5}
        }

    def test_nothing_runs_after_fail(self):
        sent = []
        reached = []

        def body():
            fail("stop", sent.append)
            reached.append(True)

        with pytest.raises(FailReported):
            body()
        assert reached == []


def test_message_requires_exactly_one_variant():
    with pytest.raises(ValueError):
        Message()

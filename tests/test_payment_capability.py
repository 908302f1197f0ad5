"""
HTTP payment capability adapter tests
Error classification and request shape, with the HTTP session mocked out
"""

from unittest.mock import Mock

import pytest
import requests

from services.payment_capability import HttpPaymentCapability, ReleaseStatus
from utils.exceptions import PaymentCapabilityError


def _response(status_code, body=None, text=""):
    response = Mock(spec=requests.Response)
    response.status_code = status_code
    response.content = b"x" if body is not None else b""
    response.text = text
    if body is None:
        response.json.side_effect = ValueError("no json")
    else:
        response.json.return_value = body
    return response


@pytest.fixture
def http():
    return Mock(spec=requests.Session)


@pytest.fixture
def capability(http):
    return HttpPaymentCapability(base_url="https://payments.test/v1/", api_key="sk_test", timeout=5, session=http)


class TestHttpPaymentCapability:

    def test_release_sends_idempotency_key(self, capability, http):
        http.request.return_value = _response(200, {"external_ref": "tr_123"})

        ref = capability.release("hold-1", 39_000, 1_000, "acct_1", "release-MS-1")

        assert ref == "tr_123"
        method, url = http.request.call_args.args
        kwargs = http.request.call_args.kwargs
        assert method == "POST"
        assert url == "https://payments.test/v1/holds/hold-1/releases"
        assert kwargs["headers"]["Idempotency-Key"] == "release-MS-1"
        assert kwargs["headers"]["Authorization"] == "Bearer sk_test"
        assert kwargs["json"] == {"amount": 39_000, "fee_amount": 1_000, "destination_account": "acct_1"}
        assert kwargs["timeout"] == 5

    def test_refund_sends_idempotency_key(self, capability, http):
        http.request.return_value = _response(200, {"refund_ref": "re_1"})

        assert capability.refund("hold-1", 10_000, "refund-DP-1-dispute_refund") == "re_1"
        method, url = http.request.call_args.args
        assert method == "POST"
        assert url == "https://payments.test/v1/holds/hold-1/refunds"
        assert http.request.call_args.kwargs["headers"]["Idempotency-Key"] == "refund-DP-1-dispute_refund"

    def test_hold_returns_funding_token(self, capability, http):
        http.request.return_value = _response(201, {"funding_token": "hold-9"})
        assert capability.hold(100_000, "USD") == "hold-9"

    @pytest.mark.parametrize("status,body,kind", [
        (500, None, PaymentCapabilityError.TRANSIENT),
        (503, {"message": "maintenance"}, PaymentCapabilityError.TRANSIENT),
        (429, {"message": "slow down"}, PaymentCapabilityError.TRANSIENT),
        (402, {"message": "no funds"}, PaymentCapabilityError.INSUFFICIENT_FUNDS),
        (409, {"code": "insufficient_funds"}, PaymentCapabilityError.INSUFFICIENT_FUNDS),
        (422, {"code": "destination_not_onboarded"}, PaymentCapabilityError.DESTINATION_NOT_ONBOARDED),
        (400, {"code": "bad_request"}, PaymentCapabilityError.PERMANENT),
    ])
    def test_http_errors_are_classified(self, capability, http, status, body, kind):
        http.request.return_value = _response(status, body, text="error")

        with pytest.raises(PaymentCapabilityError) as exc_info:
            capability.release("hold-1", 100, 0, None, "release-MS-1")
        assert exc_info.value.kind == kind
        assert exc_info.value.is_retryable == (kind == PaymentCapabilityError.TRANSIENT)
        assert exc_info.value.status_code == status

    @pytest.mark.parametrize("error", [
        requests.exceptions.Timeout("read timed out"),
        requests.exceptions.ConnectionError("connection refused"),
    ])
    def test_network_errors_are_transient(self, capability, http, error):
        http.request.side_effect = error
        with pytest.raises(PaymentCapabilityError) as exc_info:
            capability.refund("hold-1", 500, "refund-DL-1-cancellation")
        assert exc_info.value.kind == PaymentCapabilityError.TRANSIENT

    def test_release_status_lookup(self, capability, http):
        http.request.return_value = _response(200, {"state": "completed", "external_ref": "tr_9"})
        status = capability.get_release_status("release-MS-1")
        assert status.state == ReleaseStatus.COMPLETED
        assert status.external_ref == "tr_9"

    def test_unknown_release_status(self, capability, http):
        http.request.return_value = _response(404, {"message": "not found"})
        assert capability.get_release_status("release-MS-1").state == ReleaseStatus.UNKNOWN

    def test_unknown_release_status_does_not_depend_on_message(self, capability, http):
        http.request.return_value = _response(404, None, text="")
        assert capability.get_release_status("release-MS-1").state == ReleaseStatus.UNKNOWN

    def test_release_status_outage_is_raised(self, capability, http):
        http.request.return_value = _response(503, {"message": "maintenance"})
        with pytest.raises(PaymentCapabilityError) as exc_info:
            capability.get_release_status("release-MS-1")
        assert exc_info.value.status_code == 503

from __future__ import annotations

import hmac
from hashlib import sha256

from webhook_service.services.executor import encode_body
from webhook_service.services.signature import sign, verify


def test_sign_matches_hmac_sha256_hex():
    body = b'{"eventId":"e1"}'
    expected = hmac.new(b"whsec_abc", body, sha256).hexdigest()
    assert sign("whsec_abc", body) == f"sha256={expected}"


def test_verify_accepts_own_signature():
    body = encode_body({"eventType": "fault.created", "payload": {"title": "Leak in 4B"}})
    assert verify("whsec_abc", body, sign("whsec_abc", body))


def test_verify_rejects_tampered_body_or_wrong_secret():
    body = encode_body({"amount": 500})
    header = sign("whsec_abc", body)
    assert not verify("whsec_abc", encode_body({"amount": 5000}), header)
    assert not verify("whsec_other", body, header)
    assert not verify("whsec_abc", body, None)
    assert not verify("whsec_abc", body, "")


def test_encode_body_is_compact_utf8():
    body = encode_body({"name": "Žilina", "n": 1})
    assert body == '{"name":"Žilina","n":1}'.encode("utf-8")

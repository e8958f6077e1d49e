from datetime import datetime, timezone

import pytest

from asinfeed.signing import SigV4Signer, derive_signing_key, sha256_hex, sign_paapi_request


EXAMPLE_SECRET = "wJalrXUtnFEMI/K7MDENG+bPxRfiCYEXAMPLEKEY"


def test_derive_signing_key_matches_aws_reference():
    key = derive_signing_key(EXAMPLE_SECRET, "20120215", "us-east-1", "iam")

    assert key.hex() == "f4780e2d9f65fa895f9c67b32ce1baf0b0d8a43505a000a1a9e090d414db404d"


@pytest.mark.parametrize(
    "host, signature",
    [
        ("example.amazonaws.com", "5fa00fa31553b73ebf1942676e86291e8372ff2a2260956d9b8aae1d763fbf31"),
        ("example.amazon.com", "7ab4567ae243ee168f6bf18206b2b40b61ce08277323168138fa113ed23c538e"),
    ],
)
def test_get_vanilla_reference_signature(host, signature):
    signer = SigV4Signer("AKIDEXAMPLE", EXAMPLE_SECRET, "us-east-1", service="service")
    now = datetime(2015, 8, 30, 12, 36, 0, tzinfo=timezone.utc)

    headers = signer.sign("GET", host, "/", {}, b"", now=now)

    assert headers["x-amz-date"] == "20150830T123600Z"
    assert headers["Authorization"] == (
        "AWS4-HMAC-SHA256 Credential=AKIDEXAMPLE/20150830/us-east-1/service/aws4_request, "
        "SignedHeaders=host;x-amz-date, "
        f"Signature={signature}"
    )


def test_paapi_request_signs_all_required_headers():
    signer = SigV4Signer("AKID", "secret", "us-east-1")
    now = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)

    headers = sign_paapi_request(signer, "webservices.amazon.com", "/paapi5/getitems", b'{"ItemIds":[]}', now=now)

    assert headers["x-amz-target"] == "com.amazon.paapi5.v1.ProductAdvertisingAPIv1.GetItems"
    assert headers["content-encoding"] == "amz-1.0"
    assert "/20240102/us-east-1/ProductAdvertisingAPI/aws4_request" in headers["Authorization"]
    assert "SignedHeaders=content-encoding;content-type;host;x-amz-date;x-amz-target" in headers["Authorization"]


def test_signature_covers_exact_body_bytes():
    signer = SigV4Signer("AKID", "secret", "us-east-1")
    now = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)

    compact = sign_paapi_request(signer, "h", "/p", b'{"a":1}', now=now)
    spaced = sign_paapi_request(signer, "h", "/p", b'{"a": 1}', now=now)
    again = sign_paapi_request(signer, "h", "/p", b'{"a":1}', now=now)

    assert compact["Authorization"] != spaced["Authorization"]
    assert compact["Authorization"] == again["Authorization"]


def test_sha256_hex_of_empty_payload():
    assert sha256_hex(b"") == "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"

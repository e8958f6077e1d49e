import json
import sys
from pathlib import Path

import pytest
import requests

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from asinfeed.common.config_validator import build_paapi_config


class FakeResponse:
    def __init__(self, payload=None, status_code=200, text=None):
        self._payload = payload
        self.status_code = status_code
        self.text = text if text is not None else (json.dumps(payload) if payload is not None else "")
        self.reason = "OK" if status_code < 400 else "Error"

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON object could be decoded")
        return self._payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error", response=self)


class FakeSession:
    """Records GetItems calls and answers them through ``responder(asins, call_number)``."""

    def __init__(self, responder=None):
        self.responder = responder or (lambda asins, n: FakeResponse(items_payload(asins)))
        self.calls = []

    def post(self, url, data=None, headers=None, timeout=None):
        body = json.loads(data.decode("utf-8"))
        self.calls.append({"url": url, "body": body, "raw": data, "headers": headers, "timeout": timeout})
        result = self.responder(body["ItemIds"], len(self.calls))
        if isinstance(result, BaseException):
            raise result
        return result

    @property
    def batches(self):
        return [call["body"]["ItemIds"] for call in self.calls]


class FakeClock:
    """Monotonic clock that only advances when ``sleep`` is called."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


def make_item(asin, title=None, price=None, list_price=None, currency="USD", image=None, availability=None, url=None):
    item = {"ASIN": asin}
    if title is not None:
        item["ItemInfo"] = {"Title": {"DisplayValue": title}}
    listing = {}
    if price is not None:
        listing["Price"] = {"Amount": price, "Currency": currency}
    if list_price is not None:
        listing["SavingBasis"] = {"Amount": list_price, "Currency": currency}
    if availability is not None:
        listing["Availability"] = {"Type": availability}
    if listing:
        item["Offers"] = {"Listings": [listing]}
    if image is not None:
        item["Images"] = {"Primary": {"Medium": {"URL": image}}}
    if url is not None:
        item["DetailPageURL"] = url
    return item


def items_payload(asins, errors=None):
    payload = {"ItemsResult": {"Items": [make_item(a, title=f"Product {a}", price=10.0) for a in asins]}}
    if errors:
        payload["Errors"] = errors
    return payload


@pytest.fixture
def paapi_config():
    return build_paapi_config(access_key="AKIDEXAMPLE", secret_key="secret", partner_tag="mytag-20")


@pytest.fixture
def fake_clock():
    return FakeClock()

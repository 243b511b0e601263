from tradeledger.monitoring.redaction import REDACTED, redact, redaction_processor


def test_credentials_are_masked_recursively():
    event = {
        "event": "Portfolio loaded",
        "portfolio_id": 3,
        "credentials": {"apiKey": "abc", "apiSecret": "xyz"},
        "headers": [{"X-API-Key": "abc", "accept": "application/json"}],
    }

    out = redaction_processor(None, "info", event)

    assert out["credentials"] == REDACTED
    assert out["headers"][0]["X-API-Key"] == REDACTED
    assert out["headers"][0]["accept"] == "application/json"
    assert out["portfolio_id"] == 3


def test_lease_keys_are_not_treated_as_secrets():
    assert redact({"key": "sync:fills:1:BTCUSDT", "api_secret": "s"}) == {
        "key": "sync:fills:1:BTCUSDT",
        "api_secret": REDACTED,
    }

import config


def test_env_ms_reads_positive_values(monkeypatch):
    monkeypatch.setenv("GATEWAY_TEST_MS", "1500")
    assert config.env_ms("GATEWAY_TEST_MS", 60000) == 1500


def test_env_ms_falls_back_on_zero_negative_or_empty(monkeypatch):
    for raw in ("0", "-5", ""):
        monkeypatch.setenv("GATEWAY_TEST_MS", raw)
        assert config.env_ms("GATEWAY_TEST_MS", 60000) == 60000
    monkeypatch.delenv("GATEWAY_TEST_MS")
    assert config.env_ms("GATEWAY_TEST_MS", 60000) == 60000


def test_request_timeout_is_always_armed():
    assert config.GEMINI_REQUEST_TIMEOUT_MS > 0
    assert config.GEMINI_KILL_GRACE_MS > 0

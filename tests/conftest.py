import os
import shlex
import sys
from pathlib import Path

import pytest

FAKE_CLI = str(Path(__file__).with_name("fake_gemini.py"))
FAKE_CLI_COMMAND = f"{shlex.quote(sys.executable)} {shlex.quote(FAKE_CLI)}"

# config.py reads the environment at import time
os.environ["APP_API_KEY"] = "test-key"
os.environ["GEMINI_CLI_COMMAND"] = FAKE_CLI_COMMAND
os.environ["GEMINI_MAX_CONCURRENT_REQUESTS"] = "2"
os.environ["GEMINI_REQUEST_TIMEOUT_MS"] = "20000"
os.environ["STREAM_KEEPALIVE_SECONDS"] = "15"


@pytest.fixture
def fake_cli_argv():
    return [sys.executable, FAKE_CLI]


@pytest.fixture
def auth_headers():
    return {"x-api-key": "test-key"}

"""Root conftest: shared fixtures for the builder tests."""

from __future__ import annotations

import os
import sys
import tempfile
from pathlib import Path
from unittest.mock import MagicMock

# Ensure the project root is importable
_root_dir = str(Path(__file__).resolve().parent)
if _root_dir not in sys.path:
    sys.path.insert(0, _root_dir)

# Keep the module-level app out of the working directory and away from real tokens
os.environ.setdefault("BUILDER_STATE_DIR", tempfile.mkdtemp(prefix="builder-test-"))
for _var in ("GITHUB_TOKEN", "NETLIFY_TOKEN", "VERCEL_TOKEN"):
    os.environ.pop(_var, None)

import pytest

from storage import CredentialStore, LocalStorage


def make_response(status_code=200, json_data=None, text="", headers=None):
    """Stand-in for requests.Response with just the attributes the code reads."""
    resp = MagicMock()
    resp.status_code = status_code
    resp.ok = 200 <= status_code < 400
    resp.text = text
    resp.headers = headers or {}
    if isinstance(json_data, Exception):
        resp.json.side_effect = json_data
    else:
        resp.json.return_value = json_data if json_data is not None else {}
    return resp


class FakeAIClient:
    """Records calls and returns canned output; `error` is raised instead when set."""

    def __init__(self, code="<!DOCTYPE html>\n<html><body><p>hi</p></body></html>", explanation="<p>ok</p>"):
        self.code = code
        self.explanation = explanation
        self.error = None
        self.calls = []
        self.configured = True

    def generate_website_code(self, prompt):
        self.calls.append(("website", prompt))
        if self.error:
            raise self.error
        return self.code

    def generate_code_explanation(self, code, category="overview"):
        self.calls.append(("explanation", category))
        if self.error:
            raise self.error
        return self.explanation


@pytest.fixture
def storage(tmp_path):
    return LocalStorage(str(tmp_path / "state"))


@pytest.fixture
def credentials(storage):
    return CredentialStore(storage)


@pytest.fixture
def fake_ai():
    return FakeAIClient()


@pytest.fixture
def http_session():
    return MagicMock()

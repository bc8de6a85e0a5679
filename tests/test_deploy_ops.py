from __future__ import annotations

import base64
from unittest.mock import MagicMock

import pytest
import requests

from conftest import make_response
from deploy_ops import (
    MAX_DEPLOYMENT_HISTORY,
    DeploymentHistory,
    DeploymentPipeline,
    DeploymentRecord,
    sanitize_site_name,
)
from errors import (
    BuilderError,
    CredentialInvalidError,
    CredentialMissingError,
    MalformedResponseError,
    NameCollisionError,
    NetworkError,
    ValidationFailure,
)

CODE = "<!DOCTYPE html><html><head><style>p{}</style></head><body><p>hi</p><script>go()</script></body></html>"


@pytest.fixture
def history(storage):
    return DeploymentHistory(storage)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def pipeline(credentials, history, http_session, sleeps):
    return DeploymentPipeline(credentials, history, session=http_session, sleep=sleeps.append, timeout=5)


def test_sanitize_site_name():
    assert sanitize_site_name("My Site_2!") == "my-site-2-"


class TestPreflight:
    @pytest.mark.parametrize("service", ["github", "netlify", "vercel"])
    def test_missing_token_short_circuits(self, pipeline, http_session, service):
        with pytest.raises(CredentialMissingError) as exc:
            pipeline.deploy(service, CODE, "site")
        assert exc.value.action == "setup_credentials"
        assert http_session.mock_calls == []
        assert pipeline.history.list() == []

    def test_unknown_service(self, pipeline):
        with pytest.raises(ValidationFailure):
            pipeline.deploy("geocities", CODE, "site")

    def test_requires_project_name_and_code(self, pipeline):
        with pytest.raises(ValidationFailure):
            pipeline.deploy("codepen", CODE, "   ")
        with pytest.raises(ValidationFailure):
            pipeline.deploy("codepen", "", "site")

    def test_in_progress_is_ignored(self, pipeline):
        pipeline.in_progress = True
        assert pipeline.deploy("codepen", CODE, "site") is None


class TestGitHub:
    def _ok_session(self, http_session, pages_status=201):
        http_session.get.return_value = make_response(200, {"login": "octo"})
        http_session.post.side_effect = [
            make_response(201, {"html_url": "https://github.com/octo/site"}),
            make_response(pages_status, {}),
        ]
        http_session.put.return_value = make_response(201, {})

    def test_success_flow(self, pipeline, credentials, http_session):
        credentials.set_token("github", "ghp_abc")
        self._ok_session(http_session)
        steps = []
        record = pipeline.deploy("github", CODE, "site", "desc", on_progress=steps.append)

        assert record.url == "https://octo.github.io/site"
        assert record.status == "success"
        assert record.details["repository_url"] == "https://github.com/octo/site"
        assert [s.percent for s in steps] == [25, 50, 75, 100]
        assert steps[0].message == "Validating GitHub token..."

        headers = http_session.get.call_args.kwargs["headers"]
        assert headers["Authorization"] == "token ghp_abc"
        assert headers["User-Agent"]

        put_url = http_session.put.call_args.args[0]
        assert put_url.endswith("/repos/octo/site/contents/index.html")
        content = http_session.put.call_args.kwargs["json"]["content"]
        assert base64.b64decode(content).decode("utf-8") == CODE
        assert pipeline.history.list()[0].url == record.url

    def test_pages_failure_is_pending(self, pipeline, credentials, http_session):
        credentials.set_token("github", "ghp_abc")
        self._ok_session(http_session, pages_status=500)
        record = pipeline.deploy("github", CODE, "site")
        assert record.status == "pages_setup_pending"
        assert len(pipeline.history.list()) == 1

    def test_invalid_token_stops_before_repo_creation(self, pipeline, credentials, http_session):
        credentials.set_token("github", "bad")
        http_session.get.return_value = make_response(401, {"message": "Bad credentials"})
        with pytest.raises(CredentialInvalidError) as exc:
            pipeline.deploy("github", CODE, "site")
        assert "Invalid GitHub token" in exc.value.message
        assert exc.value.message.startswith("GitHub Pages deployment failed:")
        http_session.post.assert_not_called()
        http_session.put.assert_not_called()
        assert pipeline.history.list() == []
        assert pipeline.in_progress is False
        assert pipeline.status()["error"]["kind"] == "credential_invalid"

    def test_existing_repo_is_name_collision(self, pipeline, credentials, http_session):
        credentials.set_token("github", "ghp_abc")
        http_session.get.return_value = make_response(200, {"login": "octo"})
        http_session.post.return_value = make_response(422, {"message": "name already exists"})
        with pytest.raises(NameCollisionError) as exc:
            pipeline.deploy("github", CODE, "site")
        assert 'Repository "site" already exists' in exc.value.message
        http_session.put.assert_not_called()

    def test_transport_error_is_network_failure(self, pipeline, credentials, http_session):
        credentials.set_token("github", "ghp_abc")
        http_session.get.side_effect = requests.ConnectionError("offline")
        with pytest.raises(NetworkError):
            pipeline.deploy("github", CODE, "site")
        assert pipeline.in_progress is False

    def test_check_token_scopes(self, pipeline, http_session):
        http_session.get.return_value = make_response(200, {"login": "octo"}, headers={"x-oauth-scopes": "repo, gist"})
        result = pipeline.validate_github_token("ghp_abc")
        assert result["valid"] is False
        assert "user" in result["error"]


class TestNetlify:
    def test_success_flow(self, pipeline, credentials, http_session, sleeps):
        credentials.set_token("netlify", "nf")
        http_session.post.side_effect = [
            make_response(201, {"id": "site-1", "url": "http://my-site.netlify.app", "ssl_url": "https://my-site.netlify.app"}),
            make_response(200, {"id": "dep-1"}),
        ]
        record = pipeline.deploy("netlify", CODE, "My Site")

        create_call, deploy_call = http_session.post.call_args_list
        assert create_call.kwargs["json"] == {"name": "my-site"}
        assert create_call.kwargs["headers"]["Authorization"] == "Bearer nf"
        assert deploy_call.args[0].endswith("/sites/site-1/deploys")
        assert deploy_call.kwargs["headers"]["Content-Type"] == "text/html"
        assert record.url == "https://my-site.netlify.app"
        assert record.details["site_id"] == "site-1"
        assert sleeps == [2.0]

    def test_api_error_has_provider_context(self, pipeline, credentials, http_session):
        credentials.set_token("netlify", "nf")
        http_session.post.return_value = make_response(500, text="kaput")
        with pytest.raises(BuilderError) as exc:
            pipeline.deploy("netlify", CODE, "site")
        assert exc.value.message == "Netlify deployment failed: Netlify API Error: kaput"


class TestVercel:
    def test_single_call_with_files(self, pipeline, credentials, http_session, sleeps):
        credentials.set_token("vercel", "vc")
        http_session.post.return_value = make_response(200, {"id": "dpl_1", "url": "site-abc.vercel.app"})
        record = pipeline.deploy("vercel", CODE, "Site")

        http_session.post.assert_called_once()
        payload = http_session.post.call_args.kwargs["json"]
        assert payload["name"] == "site"
        assert payload["files"] == [{"file": "index.html", "data": CODE}]
        assert record.url == "https://site-abc.vercel.app"
        assert record.details["deployment_id"] == "dpl_1"
        assert sleeps == [3.0]


class TestCodePen:
    def test_simulated_without_network(self, pipeline, http_session, sleeps):
        steps = []
        record = pipeline.deploy("codepen", CODE, "pen", on_progress=steps.append)

        assert http_session.mock_calls == []
        assert sleeps == [0.6, 0.8, 0.7, 1.0]
        assert [s.message for s in steps][-1] == "Creating CodePen..."
        assert record.url.startswith("https://codepen.io/ai-builder/pen/")
        assert len(record.details["pen_id"]) == 8
        assert record.details["css"] == "p{}"
        assert record.details["js"] == "go()"
        assert record.details["html"] == "<p>hi</p>"


class TestHistory:
    def test_cap_evicts_oldest(self, history):
        for i in range(MAX_DEPLOYMENT_HISTORY + 1):
            history.add(DeploymentRecord(service="CodePen", name=f"site-{i}", url=f"https://x/{i}"))
        records = history.list()
        assert len(records) == MAX_DEPLOYMENT_HISTORY
        assert records[0].name == f"site-{MAX_DEPLOYMENT_HISTORY}"
        assert all(r.name != "site-0" for r in records)

    def test_recent_and_export(self, history):
        for i in range(7):
            history.add(DeploymentRecord(service="Vercel", name=f"s{i}", url="https://v"))
        assert [r.name for r in history.recent()] == ["s6", "s5", "s4", "s3", "s2"]
        exported = history.export()
        assert exported["totalDeployments"] == 7
        history.clear()
        assert history.list() == []


def test_services_report_credentials(pipeline, credentials):
    credentials.set_token("vercel", "vc")
    services = {s["key"]: s for s in pipeline.services()}
    assert services["vercel"]["has_credential"] is True
    assert services["github"]["has_credential"] is False
    assert services["codepen"]["requires_credential"] is False


def test_session_is_unused_without_credentials(credentials, history):
    session = MagicMock()
    pipeline = DeploymentPipeline(credentials, history, session=session, sleep=lambda s: None)
    with pytest.raises(CredentialMissingError):
        pipeline.deploy("netlify", CODE, "x")
    session.post.assert_not_called()


class TestUnexpectedResponses:
    def test_vercel_reply_without_url_is_malformed(self, pipeline, credentials, http_session):
        credentials.set_token("vercel", "vc")
        http_session.post.return_value = make_response(200, {})
        with pytest.raises(MalformedResponseError) as exc:
            pipeline.deploy("vercel", CODE, "site")
        assert exc.value.kind == "malformed_response"
        assert exc.value.provider == "vercel"
        assert pipeline.history.list() == []

    def test_netlify_site_without_id_stops_before_upload(self, pipeline, credentials, http_session):
        credentials.set_token("netlify", "nf")
        http_session.post.return_value = make_response(201, {"url": "http://x.netlify.app"})
        with pytest.raises(MalformedResponseError):
            pipeline.deploy("netlify", CODE, "site")
        http_session.post.assert_called_once()
        assert pipeline.history.list() == []

    def test_github_user_without_login_is_malformed(self, pipeline, credentials, http_session):
        credentials.set_token("github", "ghp_abc")
        http_session.get.return_value = make_response(200, {"id": 1})
        with pytest.raises(MalformedResponseError):
            pipeline.deploy("github", CODE, "site")
        http_session.post.assert_not_called()

    def test_non_json_success_body_is_malformed_not_network(self, pipeline, credentials, http_session):
        credentials.set_token("github", "ghp_abc")
        http_session.get.return_value = make_response(
            200, requests.JSONDecodeError("Expecting value", "<html>", 0), text="<html>")
        with pytest.raises(MalformedResponseError) as exc:
            pipeline.deploy("github", CODE, "site")
        assert exc.value.kind == "malformed_response"
        assert pipeline.status()["error"]["kind"] == "malformed_response"
        http_session.post.assert_not_called()

    def test_token_check_with_unreadable_body(self, pipeline, http_session):
        http_session.get.return_value = make_response(200, ValueError("not json"))
        result = pipeline.validate_github_token("ghp_abc")
        assert result["valid"] is False

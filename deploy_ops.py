import base64
import datetime
import logging
import re
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Literal, Optional

import requests
from pydantic import BaseModel, Field

from asset_splitter import split_assets
from errors import (
    BuilderError,
    CredentialInvalidError,
    CredentialMissingError,
    MalformedResponseError,
    NameCollisionError,
    NetworkError,
    ValidationFailure,
)
from helpers import generate_base36_id, utcnow
from storage import DEPLOYMENTS_KEY, CredentialStore, LocalStorage, insert_capped

logger = logging.getLogger('deploy-ops')

TOTAL_STEPS = 4
MAX_DEPLOYMENT_HISTORY = 50
USER_AGENT = 'AI-Website-Builder'

GITHUB_API = 'https://api.github.com'
NETLIFY_API = 'https://api.netlify.com/api/v1'
VERCEL_API = 'https://api.vercel.com'

DeploymentStatus = Literal['success', 'pending', 'pages_setup_pending', 'failed']


class DeploymentRecord(BaseModel):
    service: str
    name: str
    description: str = ''
    url: str
    status: DeploymentStatus = 'success'
    created_at: datetime.datetime = Field(default_factory=utcnow)
    # provider-specific identifiers (repository_url, site_id, deployment_id, pen_id, ...)
    details: Dict[str, str] = Field(default_factory=dict)


@dataclass
class ProgressStep:
    step: int
    message: str

    @property
    def percent(self) -> int:
        return int(self.step / TOTAL_STEPS * 100)

    def to_dict(self) -> dict:
        return {'step': self.step, 'message': self.message, 'percent': self.percent}


@dataclass
class DeployContext:
    code: str
    project_name: str
    description: str
    headers: Dict[str, str]
    session: requests.Session
    timeout: float
    sleep: Callable[[float], None]
    state: Dict[str, object] = field(default_factory=dict)


def sanitize_site_name(name: str) -> str:
    """Lowercase, every non [a-z0-9] character replaced by '-'."""
    return re.sub(r'[^a-z0-9]', '-', name.lower())


def _error_message(resp, fallback: str) -> str:
    try:
        data = resp.json()
    except ValueError:
        return fallback
    if isinstance(data, dict) and data.get('message'):
        return str(data['message'])
    return fallback


def _json_fields(resp, provider: str, what: str, *required: str) -> dict:
    """Decode a 2xx body, failing as malformed when it is not a JSON object carrying `required`."""
    try:
        data = resp.json()
    except ValueError as e:
        raise MalformedResponseError(f'Unexpected {what} response: body is not JSON', provider=provider) from e
    if not isinstance(data, dict):
        raise MalformedResponseError(f'Unexpected {what} response: expected an object', provider=provider)
    missing = [name for name in required if not data.get(name)]
    if missing:
        raise MalformedResponseError(f"Unexpected {what} response: missing {', '.join(missing)}", provider=provider)
    return data


class HostingProvider:
    """One hosting target, driven by DeploymentPipeline through four phases."""

    key = ''
    display_name = ''
    requires_credential = True
    auth_scheme = 'Bearer'
    step_messages = ('Preparing deployment...', 'Creating deployment...', 'Uploading files...', 'Finalizing...')

    def base_headers(self) -> Dict[str, str]:
        return {}

    def validate(self, ctx: DeployContext) -> None:
        pass

    def create(self, ctx: DeployContext) -> None:
        pass

    def upload(self, ctx: DeployContext) -> None:
        pass

    def finalize(self, ctx: DeployContext) -> DeploymentRecord:
        raise NotImplementedError


class GitHubPagesProvider(HostingProvider):
    key = 'github'
    display_name = 'GitHub Pages'
    auth_scheme = 'token'
    step_messages = ('Validating GitHub token...', 'Creating repository...', 'Uploading files...',
                     'Configuring GitHub Pages...')
    required_scopes = ('repo', 'user')

    def base_headers(self) -> Dict[str, str]:
        return {'Accept': 'application/vnd.github.v3+json', 'User-Agent': USER_AGENT}

    def validate(self, ctx: DeployContext) -> None:
        r = ctx.session.get(f'{GITHUB_API}/user', headers=ctx.headers, timeout=ctx.timeout)
        if r.status_code == 401:
            raise CredentialInvalidError('Invalid GitHub token. Please check your token.', provider=self.key)
        if not r.ok:
            raise BuilderError(_error_message(r, 'Failed to authenticate with GitHub'), provider=self.key)
        ctx.state['owner'] = _json_fields(r, self.key, 'GitHub user', 'login')['login']
        logger.info('GitHub token valid for %s', ctx.state['owner'])

    def create(self, ctx: DeployContext) -> None:
        payload = {
            'name': ctx.project_name,
            'description': ctx.description or 'Website created with AI Website Builder',
            'private': False,
            'auto_init': False,
        }
        r = ctx.session.post(f'{GITHUB_API}/user/repos', headers=ctx.headers, json=payload, timeout=ctx.timeout)
        if r.status_code == 422:
            raise NameCollisionError(
                f'Repository "{ctx.project_name}" already exists. Please choose a different name.', provider=self.key)
        if not r.ok:
            raise BuilderError(_error_message(r, 'Failed to create repository'), provider=self.key)
        repo = _json_fields(r, self.key, 'GitHub repository')
        ctx.state['repository_url'] = repo.get('html_url') or f"https://github.com/{ctx.state['owner']}/{ctx.project_name}"
        logger.info('Created GitHub repo %s/%s', ctx.state['owner'], ctx.project_name)

    def upload(self, ctx: DeployContext) -> None:
        content_b64 = base64.b64encode(ctx.code.encode('utf-8')).decode('ascii')
        put_url = f"{GITHUB_API}/repos/{ctx.state['owner']}/{ctx.project_name}/contents/index.html"
        r = ctx.session.put(put_url, headers=ctx.headers, json={'message': 'Initial commit', 'content': content_b64},
                            timeout=ctx.timeout)
        if not r.ok:
            raise BuilderError(_error_message(r, 'Failed to upload files'), provider=self.key)

    def finalize(self, ctx: DeployContext) -> DeploymentRecord:
        owner = ctx.state['owner']
        pages_payload = {'source': {'branch': 'main', 'path': '/'}}
        status = 'success'
        try:
            r = ctx.session.post(f'{GITHUB_API}/repos/{owner}/{ctx.project_name}/pages', headers=ctx.headers,
                                 json=pages_payload, timeout=ctx.timeout)
            if not r.ok:
                logger.warning('Enable Pages returned %s: %s', r.status_code, (r.text or '')[:300])
                status = 'pages_setup_pending'
        except requests.RequestException:
            logger.exception('GitHub Pages enablement failed; reporting as pending')
            status = 'pages_setup_pending'

        return DeploymentRecord(
            service=self.display_name,
            name=ctx.project_name,
            description=ctx.description,
            url=f'https://{owner}.github.io/{ctx.project_name}',
            status=status,
            details={'repository_url': str(ctx.state['repository_url']), 'owner': str(owner)},
        )

    def check_token(self, session: requests.Session, headers: Dict[str, str], timeout: float) -> dict:
        """Validate a token and its scopes without deploying anything."""
        try:
            r = session.get(f'{GITHUB_API}/user', headers=dict(self.base_headers(), **headers), timeout=timeout)
        except requests.RequestException:
            logger.exception('GitHub token validation request failed')
            return {'valid': False, 'error': 'Failed to validate token'}
        if not r.ok:
            return {'valid': False, 'error': 'Invalid token' if r.status_code == 401 else 'Token has insufficient permissions'}
        try:
            user = _json_fields(r, self.key, 'GitHub user', 'login')['login']
        except MalformedResponseError as e:
            return {'valid': False, 'error': e.message}
        scopes = r.headers.get('x-oauth-scopes') or ''
        granted = {s.strip() for s in scopes.split(',') if s.strip()}
        missing = [s for s in self.required_scopes if s not in granted]
        return {
            'valid': not missing,
            'user': user,
            'scopes': sorted(granted),
            'error': f"Token missing required scopes: {', '.join(missing)}" if missing else None,
        }


class NetlifyProvider(HostingProvider):
    key = 'netlify'
    display_name = 'Netlify'
    step_messages = ('Preparing Netlify deployment...', 'Creating Netlify site...', 'Uploading files...',
                     'Publishing...')
    publish_delay = 2.0

    def create(self, ctx: DeployContext) -> None:
        r = ctx.session.post(f'{NETLIFY_API}/sites', headers=dict(ctx.headers, **{'Content-Type': 'application/json'}),
                             json={'name': sanitize_site_name(ctx.project_name)}, timeout=ctx.timeout)
        if r.status_code == 401:
            raise CredentialInvalidError('Invalid Netlify token. Please check your token.', provider=self.key)
        if r.status_code == 422:
            raise NameCollisionError(
                f'Site name "{sanitize_site_name(ctx.project_name)}" is already taken. Please choose a different name.',
                provider=self.key)
        if not r.ok:
            raise BuilderError(f'Netlify API Error: {r.text}', provider=self.key)
        site = _json_fields(r, self.key, 'Netlify site', 'id')
        if not (site.get('ssl_url') or site.get('url')):
            raise MalformedResponseError('Unexpected Netlify site response: missing url', provider=self.key)
        ctx.state['site_id'] = site['id']
        ctx.state['url'] = site.get('ssl_url') or site['url']
        logger.info('Created Netlify site %s', ctx.state['site_id'])

    def upload(self, ctx: DeployContext) -> None:
        r = ctx.session.post(f"{NETLIFY_API}/sites/{ctx.state['site_id']}/deploys",
                             headers=dict(ctx.headers, **{'Content-Type': 'text/html'}),
                             data=ctx.code.encode('utf-8'), timeout=ctx.timeout)
        if not r.ok:
            raise BuilderError('Failed to deploy to Netlify', provider=self.key)
        try:
            ctx.state['deploy_id'] = r.json().get('id') or ''
        except ValueError:
            ctx.state['deploy_id'] = ''

    def finalize(self, ctx: DeployContext) -> DeploymentRecord:
        ctx.sleep(self.publish_delay)
        return DeploymentRecord(
            service=self.display_name,
            name=ctx.project_name,
            description=ctx.description,
            url=str(ctx.state['url']),
            details={'site_id': str(ctx.state['site_id']), 'deploy_id': str(ctx.state['deploy_id'])},
        )


class VercelProvider(HostingProvider):
    key = 'vercel'
    display_name = 'Vercel'
    step_messages = ('Preparing Vercel deployment...', 'Creating Vercel deployment...', 'Building...',
                     'Deploying...')
    deploy_delay = 3.0

    def create(self, ctx: DeployContext) -> None:
        payload = {
            'name': sanitize_site_name(ctx.project_name),
            'files': [{'file': 'index.html', 'data': ctx.code}],
            'projectSettings': {'framework': None},
        }
        r = ctx.session.post(f'{VERCEL_API}/v13/deployments', headers=dict(ctx.headers, **{'Content-Type': 'application/json'}),
                             json=payload, timeout=ctx.timeout)
        if r.status_code in (401, 403):
            raise CredentialInvalidError('Invalid Vercel token. Please check your token.', provider=self.key)
        if not r.ok:
            raise BuilderError(f'Vercel API Error: {r.text}', provider=self.key)
        data = _json_fields(r, self.key, 'Vercel deployment', 'id', 'url')
        ctx.state['deployment_id'] = data['id']
        ctx.state['url'] = f"https://{data['url']}"

    def finalize(self, ctx: DeployContext) -> DeploymentRecord:
        ctx.sleep(self.deploy_delay)
        return DeploymentRecord(
            service=self.display_name,
            name=ctx.project_name,
            description=ctx.description,
            url=str(ctx.state['url']),
            details={'deployment_id': str(ctx.state['deployment_id'])},
        )


class CodePenProvider(HostingProvider):
    """Simulated: no network call, splits the page and fabricates a pen URL."""

    key = 'codepen'
    display_name = 'CodePen'
    requires_credential = False
    step_messages = ('Parsing HTML structure...', 'Extracting CSS styles...', 'Processing JavaScript...',
                     'Creating CodePen...')
    delays = (0.6, 0.8, 0.7, 1.0)
    pen_base_url = 'https://codepen.io/ai-builder/pen'

    def validate(self, ctx: DeployContext) -> None:
        ctx.sleep(self.delays[0])
        ctx.state['parts'] = split_assets(ctx.code)

    def create(self, ctx: DeployContext) -> None:
        ctx.sleep(self.delays[1])

    def upload(self, ctx: DeployContext) -> None:
        ctx.sleep(self.delays[2])

    def finalize(self, ctx: DeployContext) -> DeploymentRecord:
        ctx.sleep(self.delays[3])
        parts = ctx.state['parts']
        pen_id = generate_base36_id(8)
        return DeploymentRecord(
            service=self.display_name,
            name=ctx.project_name,
            description=ctx.description,
            url=f'{self.pen_base_url}/{pen_id}',
            details={'pen_id': pen_id, 'html': parts.html, 'css': parts.css, 'js': parts.js},
        )


DEFAULT_PROVIDERS = (GitHubPagesProvider, NetlifyProvider, VercelProvider, CodePenProvider)


class DeploymentHistory:
    def __init__(self, storage: LocalStorage, cap: int = MAX_DEPLOYMENT_HISTORY):
        self.storage = storage
        self.cap = cap

    def list(self) -> List[DeploymentRecord]:
        raw = self.storage.get(DEPLOYMENTS_KEY, [])
        records = []
        for item in raw if isinstance(raw, list) else []:
            try:
                records.append(DeploymentRecord.model_validate(item))
            except ValueError:
                logger.exception('Skipping unreadable deployment record')
        return records

    def recent(self, limit: int = 5) -> List[DeploymentRecord]:
        return self.list()[:limit]

    def add(self, record: DeploymentRecord) -> List[DeploymentRecord]:
        records = insert_capped(self.list(), record, self.cap)
        self.storage.set(DEPLOYMENTS_KEY, [r.model_dump(mode='json') for r in records])
        return records

    def clear(self) -> None:
        self.storage.remove(DEPLOYMENTS_KEY)

    def export(self) -> dict:
        records = self.list()
        return {
            'deployments': [r.model_dump(mode='json') for r in records],
            'exportedAt': utcnow().isoformat(),
            'totalDeployments': len(records),
            'generator': 'AI Website Builder',
        }


class DeploymentPipeline:
    """Runs one deployment attempt at a time against any HostingProvider.

    Progress of the latest attempt is kept on the instance for polling. History is
    written only when an attempt succeeds.
    """

    def __init__(self, credentials: CredentialStore, history: DeploymentHistory,
                 session: Optional[requests.Session] = None, providers=None,
                 sleep: Callable[[float], None] = time.sleep, timeout: float = 60.0):
        self.credentials = credentials
        self.history = history
        self.session = session or requests.Session()
        self.sleep = sleep
        self.timeout = timeout
        self.providers: Dict[str, HostingProvider] = {}
        for provider in providers or [cls() for cls in DEFAULT_PROVIDERS]:
            self.providers[provider.key] = provider

        self.in_progress = False
        self.progress: List[ProgressStep] = []
        self.last_error: Optional[BuilderError] = None
        self._flag_lock = threading.Lock()

    def services(self) -> List[dict]:
        return [
            {'key': p.key, 'name': p.display_name, 'requires_credential': p.requires_credential,
             'has_credential': (not p.requires_credential) or self.credentials.has_token(p.key)}
            for p in self.providers.values()
        ]

    def get_provider(self, service: str) -> HostingProvider:
        provider = self.providers.get(service)
        if provider is None:
            raise ValidationFailure('Invalid deployment service selected')
        return provider

    def _report(self, step: int, message: str, on_progress) -> None:
        ps = ProgressStep(step, message)
        self.progress.append(ps)
        logger.info('[%s%%] %s', ps.percent, message)
        if on_progress:
            on_progress(ps)

    def status(self) -> dict:
        return {
            'in_progress': self.in_progress,
            'steps': [s.to_dict() for s in self.progress],
            'error': self.last_error.to_dict() if self.last_error else None,
        }

    def deploy(self, service: str, code: str, project_name: str, description: str = '',
               on_progress: Optional[Callable[[ProgressStep], None]] = None) -> Optional[DeploymentRecord]:
        """Run the four phases for `service`; returns None when an attempt is already running."""
        provider = self.get_provider(service)
        if not code:
            raise ValidationFailure('No code available to deploy')
        project_name = (project_name or '').strip()
        if not project_name:
            raise ValidationFailure('Please enter a project name')
        description = (description or '').strip()

        headers = provider.base_headers()
        if provider.requires_credential:
            if not self.credentials.has_token(provider.key):
                raise CredentialMissingError(
                    f'{provider.display_name} token required! Please setup API keys first.', provider=provider.key)
            headers.update(self.credentials.auth_header(provider.key, provider.auth_scheme))

        with self._flag_lock:
            if self.in_progress:
                logger.info('Deployment already in progress; ignoring request')
                return None
            self.in_progress = True
            self.progress = []
            self.last_error = None

        ctx = DeployContext(code=code, project_name=project_name, description=description, headers=headers,
                            session=self.session, timeout=self.timeout, sleep=self.sleep)
        phases = (provider.validate, provider.create, provider.upload)
        try:
            for step, phase in enumerate(phases, start=1):
                self._report(step, provider.step_messages[step - 1], on_progress)
                phase(ctx)
            self._report(TOTAL_STEPS, provider.step_messages[TOTAL_STEPS - 1], on_progress)
            record = provider.finalize(ctx)
        except BuilderError as e:
            logger.error('%s deployment failed: %s', provider.display_name, e.message)
            self.last_error = e.with_context(f'{provider.display_name} deployment failed')
            raise self.last_error
        except requests.RequestException as e:
            logger.exception('%s deployment failed on transport', provider.display_name)
            self.last_error = NetworkError(f'{provider.display_name} deployment failed: network error ({e})',
                                           provider=provider.key)
            raise self.last_error from e
        finally:
            self.in_progress = False

        self.history.add(record)
        logger.info('Deployed %s to %s: %s (%s)', project_name, provider.display_name, record.url, record.status)
        return record

    def validate_github_token(self, token: Optional[str] = None) -> dict:
        provider = self.providers.get('github')
        if not isinstance(provider, GitHubPagesProvider):
            raise ValidationFailure('GitHub provider is not configured')
        if token:
            headers = {'Authorization': f'{provider.auth_scheme} {token}'}
        else:
            headers = self.credentials.auth_header('github', provider.auth_scheme)
        return provider.check_token(self.session, headers, self.timeout)

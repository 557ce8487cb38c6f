import sys
from pathlib import Path

# Ensure the package under src/ is importable when running tests
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / 'src'
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

import json
import re

import pytest

from codeforge.config import settings as settings_module
from codeforge.config.settings import Settings
from codeforge.constants import JobStatus, ProjectType
from codeforge.services import request_registry
from codeforge.services.generation import api_client, job_queue
from codeforge.services.generation.api_client import Completion, TokenUsage
from codeforge.services.generation.config import GenerationConfig
from codeforge.services.generation.job_store import FilePlanEntry, ImprovedSpec, JobInput, JobStore
from codeforge.utils import distributed_lock

PREMIUM = 'premium/model-pro'
FALLBACK = 'fallback/model-mini:free'

_FILE_RE = re.compile(r'^Generate file: (\S+)', re.MULTILINE)
_PLAN_LINE_RE = re.compile(r'^- (\S+):', re.MULTILINE)


class FakeCompletionClient:
    """In-memory completion client.

    ``handler(messages, model, options)`` returns the response text (or a
    Completion) and may raise to simulate failures. The default handler
    answers every call with well-formed JSON for the requested files.
    """

    def __init__(self, handler=None, tokens: int = 100):
        self.handler = handler or self.default_handler
        self.tokens = tokens
        self.calls = []

    async def complete(self, messages, model, options=None):
        options = options or {}
        self.calls.append({'messages': messages, 'model': model, 'options': options})
        result = self.handler(messages, model, options)
        if isinstance(result, Completion):
            return result
        return Completion(content=result, usage=TokenUsage(total_tokens=self.tokens), model=model)

    # Prompt inspection helpers

    @staticmethod
    def user_prompt(messages) -> str:
        return messages[-1]['content']

    @classmethod
    def is_foundation(cls, messages) -> bool:
        return 'project foundation' in cls.user_prompt(messages)

    @staticmethod
    def is_consistency(messages) -> bool:
        return 'quality assurance' in messages[0]['content']

    @classmethod
    def requested_path(cls, messages):
        match = _FILE_RE.search(cls.user_prompt(messages))
        return match.group(1) if match else None

    @classmethod
    def foundation_paths(cls, messages):
        section = cls.user_prompt(messages).split('## Files to generate', 1)[1]
        section = section.split('## Key requirements', 1)[0]
        return _PLAN_LINE_RE.findall(section)

    @classmethod
    def default_handler(cls, messages, model, options):
        if cls.is_consistency(messages):
            return json.dumps({'issues': [], 'suggestions': 'Looks consistent'})
        if cls.is_foundation(messages):
            return json.dumps([
                {'path': p, 'content': f"/* {p} */"} for p in cls.foundation_paths(messages)
            ])
        path = cls.requested_path(messages)
        return json.dumps({'path': path, 'content': f"<!-- {path} -->"})

    def models_for(self, path: str):
        return [
            call['model'] for call in self.calls
            if self.requested_path(call['messages']) == path
        ]


@pytest.fixture(autouse=True)
def reset_singletons(monkeypatch):
    """Every test starts with fresh process-wide singletons."""
    monkeypatch.setattr(settings_module, '_settings', None)
    monkeypatch.setattr(distributed_lock, '_lease_lock', None)
    monkeypatch.setattr(request_registry, '_request_registry', None)
    monkeypatch.setattr(request_registry, '_event_registry', None)
    monkeypatch.setattr(api_client, '_client', None)
    monkeypatch.setattr(job_queue, '_queue', None)
    yield


@pytest.fixture
def settings(tmp_path):
    """Settings rooted in a temporary directory."""
    return Settings(
        work_base=tmp_path / 'work',
        output_base=tmp_path / 'output',
        log_base=tmp_path / 'logs',
        zip_base=tmp_path / 'zips',
        instance_id='test-instance',
        openrouter_api_key='test-key',
        premium_model=PREMIUM,
        fallback_model=FALLBACK,
    )


@pytest.fixture
def gen_config():
    """Generation config with no delays."""
    return GenerationConfig(
        premium_model=PREMIUM,
        fallback_model=FALLBACK,
        retry_delay=0,
        paid_batch_delay=0,
        free_batch_delay=0,
    )


@pytest.fixture
def store(settings):
    return JobStore(settings)


@pytest.fixture
def fake_client():
    return FakeCompletionClient()


@pytest.fixture
def client_factory():
    """The FakeCompletionClient class, for tests that supply a handler."""
    return FakeCompletionClient


@pytest.fixture
def make_job(store):
    """Build a planned job for a list of paths (or FilePlanEntry objects)."""
    def _make(paths, message='Build a small site', title='Test Site'):
        entries = [p if isinstance(p, FilePlanEntry) else FilePlanEntry(path=p, purpose=f"{p} file") for p in paths]
        job = store.create_job(ProjectType.STATIC_SITE, JobInput(user_message=message, user_id='u1'), entries)
        job.spec = ImprovedSpec(title=title, primary_file='index.html')
        job.status = JobStatus.PLANNED
        return job
    return _make

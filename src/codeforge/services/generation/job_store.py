"""Job Store
=============

Job records and their lifecycle: creation, directories, per-job log file,
stage timings, status transitions and persistence to ``job.json``.

Status machine::

    created -> spec_generated -> planned -> generated -> done
    (any non-terminal state) -> failed

Transitions outside this map raise InvalidTransitionError. Jobs are never
deleted here; retention is someone else's concern.
"""

from __future__ import annotations

import json
import logging
import random
import re
import string
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from codeforge.config.settings import Settings, get_settings
from codeforge.constants import JobStatus, PipelineVariant, ProjectType
from codeforge.services.service_base import InvalidTransitionError, ValidationError
from codeforge.utils.time import utc_iso

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: Dict[JobStatus, tuple] = {
    JobStatus.CREATED: (JobStatus.SPEC_GENERATED, JobStatus.FAILED),
    JobStatus.SPEC_GENERATED: (JobStatus.PLANNED, JobStatus.FAILED),
    JobStatus.PLANNED: (JobStatus.GENERATED, JobStatus.FAILED),
    JobStatus.GENERATED: (JobStatus.DONE, JobStatus.FAILED),
    JobStatus.DONE: (),
    JobStatus.FAILED: (),
}

_BASE36 = string.digits + string.ascii_lowercase


def _to_base36(value: int) -> str:
    if value == 0:
        return '0'
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return ''.join(reversed(digits))


def generate_job_id() -> str:
    """URL-safe id: ``job-<base36 epoch ms>-<6 random chars>``."""
    stamp = _to_base36(int(time.time() * 1000))
    suffix = ''.join(random.choices(_BASE36, k=6))
    return f"job-{stamp}-{suffix}"


def sanitize_for_path(value: str) -> str:
    return re.sub(r'[^a-zA-Z0-9_-]', '-', value)


# ===========================
# DATA MODEL
# ===========================

@dataclass
class JobInput:
    user_message: str
    user_id: Optional[str] = None
    source_context: Optional[str] = None
    channel_id: Optional[str] = None


@dataclass
class JobPaths:
    workspace_dir: Path
    output_dir: Path
    logs_path: Path

    @property
    def generated_dir(self) -> Path:
        return self.workspace_dir / 'generated'


@dataclass
class ImprovedSpec:
    """Refined project description returned by the spec generator."""
    title: str
    project_type: ProjectType = ProjectType.STATIC_SITE
    acceptance_checklist: List[str] = field(default_factory=list)
    primary_file: Optional[str] = None
    description: str = ''

    def to_dict(self) -> Dict[str, Any]:
        return {
            'title': self.title,
            'project_type': str(self.project_type),
            'acceptance_checklist': list(self.acceptance_checklist),
            'primary_file': self.primary_file,
            'description': self.description,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ImprovedSpec':
        return cls(
            title=data.get('title', 'Untitled project'),
            project_type=ProjectType(data.get('project_type', ProjectType.STATIC_SITE.value)),
            acceptance_checklist=list(data.get('acceptance_checklist') or []),
            primary_file=data.get('primary_file'),
            description=data.get('description', ''),
        )


@dataclass
class FilePlanEntry:
    path: str
    purpose: str = ''
    notes: str = ''

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FilePlanEntry':
        path = data.get('path')
        if not isinstance(path, str) or not path.strip():
            raise ValidationError(f"File plan entry without a path: {data!r}")
        return cls(path=path.strip(), purpose=data.get('purpose') or '', notes=data.get('notes') or '')


@dataclass
class JobPlan:
    file_plan: List[FilePlanEntry] = field(default_factory=list)


@dataclass
class GeneratedFile:
    path: str
    content: str


@dataclass
class CodegenResult:
    files: List[GeneratedFile] = field(default_factory=list)
    notes: str = ''
    entrypoint: Optional[str] = None


@dataclass
class JobDiagnostics:
    stage_timings: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    token_usage: Dict[str, int] = field(default_factory=lambda: {'premium': 0, 'fallback': 0, 'total': 0})
    pipeline_variant: str = PipelineVariant.CHUNKED.value
    consistency_issues: List[Dict[str, str]] = field(default_factory=list)
    failed_paths: List[str] = field(default_factory=list)
    models_used: Dict[str, str] = field(default_factory=dict)
    budget: Dict[str, int] = field(default_factory=dict)
    error: Optional[str] = None

    def add_tokens(self, tier: str, tokens: int) -> None:
        self.token_usage[tier] = self.token_usage.get(tier, 0) + tokens
        self.token_usage['total'] = self.token_usage.get('total', 0) + tokens


@dataclass
class Job:
    """One generation job, owned by the orchestrator for its lifetime."""
    job_id: str
    project_type: ProjectType
    input: JobInput
    paths: JobPaths
    created_at: str = field(default_factory=utc_iso)
    status: JobStatus = JobStatus.CREATED
    spec: Optional[ImprovedSpec] = None
    plan: JobPlan = field(default_factory=JobPlan)
    codegen_result: Optional[CodegenResult] = None
    zip_path: Optional[Path] = None
    diagnostics: JobDiagnostics = field(default_factory=JobDiagnostics)

    @property
    def planned_count(self) -> int:
        return len(self.plan.file_plan)

    @property
    def generated_count(self) -> int:
        return len(self.codegen_result.files) if self.codegen_result else 0

    @property
    def is_partial(self) -> bool:
        """Some files were produced, but fewer than planned."""
        return 0 < self.generated_count < self.planned_count

    def to_dict(self) -> Dict[str, Any]:
        return {
            'job_id': self.job_id,
            'created_at': self.created_at,
            'project_type': str(self.project_type),
            'status': str(self.status),
            'input': {
                'user_message': self.input.user_message,
                'user_id': self.input.user_id,
                'source_context': self.input.source_context,
                'channel_id': self.input.channel_id,
            },
            'paths': {
                'workspace_dir': str(self.paths.workspace_dir),
                'output_dir': str(self.paths.output_dir),
                'logs_path': str(self.paths.logs_path),
            },
            'spec': self.spec.to_dict() if self.spec else None,
            'plan': {
                'file_plan': [
                    {'path': e.path, 'purpose': e.purpose, 'notes': e.notes} for e in self.plan.file_plan
                ],
            },
            'codegen_result': {
                'files': [f.path for f in self.codegen_result.files],
                'notes': self.codegen_result.notes,
                'entrypoint': self.codegen_result.entrypoint,
            } if self.codegen_result else None,
            'zip_path': str(self.zip_path) if self.zip_path else None,
            'diagnostics': {
                'stage_timings': self.diagnostics.stage_timings,
                'token_usage': self.diagnostics.token_usage,
                'pipeline_variant': self.diagnostics.pipeline_variant,
                'consistency_issues': self.diagnostics.consistency_issues,
                'failed_paths': self.diagnostics.failed_paths,
                'models_used': self.diagnostics.models_used,
                'budget': self.diagnostics.budget,
                'error': self.diagnostics.error,
            },
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Job':
        paths = data['paths']
        diag = data.get('diagnostics') or {}
        spec = data.get('spec')
        job = cls(
            job_id=data['job_id'],
            project_type=ProjectType(data['project_type']),
            input=JobInput(**data['input']),
            paths=JobPaths(
                workspace_dir=Path(paths['workspace_dir']),
                output_dir=Path(paths['output_dir']),
                logs_path=Path(paths['logs_path']),
            ),
            created_at=data.get('created_at') or utc_iso(),
            status=JobStatus(data['status']),
            spec=ImprovedSpec.from_dict(spec) if spec else None,
            plan=JobPlan([FilePlanEntry.from_dict(e) for e in (data.get('plan') or {}).get('file_plan', [])]),
            zip_path=Path(data['zip_path']) if data.get('zip_path') else None,
        )
        job.diagnostics = JobDiagnostics(
            stage_timings=diag.get('stage_timings', {}),
            token_usage=diag.get('token_usage', {'premium': 0, 'fallback': 0, 'total': 0}),
            pipeline_variant=diag.get('pipeline_variant', PipelineVariant.CHUNKED.value),
            consistency_issues=diag.get('consistency_issues', []),
            failed_paths=diag.get('failed_paths', []),
            models_used=diag.get('models_used', {}),
            budget=diag.get('budget', {}),
            error=diag.get('error'),
        )
        # File contents live on disk under generated/; only the notes are restored here
        result = data.get('codegen_result')
        if result:
            job.codegen_result = CodegenResult(files=[], notes=result.get('notes', ''), entrypoint=result.get('entrypoint'))
        return job


# ===========================
# STORE
# ===========================

class JobStore:
    """Creates jobs and applies every mutation that must be logged or persisted."""

    def __init__(self, settings: Optional[Settings] = None, clock: Callable[[], float] = time.monotonic):
        settings = settings or get_settings()
        self.work_base = Path(settings.work_base)
        self.output_base = Path(settings.output_base)
        self.log_base = Path(settings.log_base)
        self._clock = clock
        self._jobs: Dict[str, Job] = {}
        self._stage_starts: Dict[str, Dict[str, float]] = {}

    def create_job(
        self,
        project_type: ProjectType,
        job_input: JobInput,
        file_plan: Optional[List[FilePlanEntry]] = None,
        job_id: Optional[str] = None,
    ) -> Job:
        job_id = job_id or generate_job_id()
        job = Job(
            job_id=job_id,
            project_type=project_type,
            input=job_input,
            paths=JobPaths(
                workspace_dir=self.work_base / job_id,
                output_dir=self.output_base / job_id,
                logs_path=self.log_base / f"{job_id}.log",
            ),
            plan=JobPlan(list(file_plan or [])),
        )
        self._jobs[job_id] = job
        logger.info(f"Created job {job_id} ({project_type})")
        return job

    def get(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    def set_output_to_logs_dir(
        self,
        job: Job,
        username: str,
        guild_name: Optional[str],
        channel_name: str,
        logs_root: Path = Path('logs'),
    ) -> Path:
        """Route output under logs/<user>/<guild|dms>/<channel>/generated/<job_id>."""
        job.paths.output_dir = (
            logs_root
            / sanitize_for_path(username)
            / (sanitize_for_path(guild_name) if guild_name else 'dms')
            / sanitize_for_path(channel_name)
            / 'generated'
            / job.job_id
        )
        return job.paths.output_dir

    def ensure_dirs(self, job: Job) -> None:
        for directory in (job.paths.workspace_dir, job.paths.output_dir, job.paths.logs_path.parent):
            directory.mkdir(parents=True, exist_ok=True)

    def write_log(self, job: Job, line: str) -> None:
        """Append a timestamped line to the job log. Never raises."""
        try:
            job.paths.logs_path.parent.mkdir(parents=True, exist_ok=True)
            with job.paths.logs_path.open('a', encoding='utf-8') as fh:
                fh.write(f"[{utc_iso()}] {line}\n")
        except OSError as e:
            logger.warning(f"Could not write job log for {job.job_id}: {e}")

    def mark_stage_start(self, job: Job, stage: str) -> None:
        self._stage_starts.setdefault(job.job_id, {})[stage] = self._clock()
        job.diagnostics.stage_timings[stage] = {'start': utc_iso()}
        self.write_log(job, f"Stage started: {stage}")

    def mark_stage_end(self, job: Job, stage: str) -> Optional[int]:
        started = self._stage_starts.get(job.job_id, {}).pop(stage, None)
        timing = job.diagnostics.stage_timings.setdefault(stage, {})
        timing['end'] = utc_iso()
        if started is None:
            self.write_log(job, f"Stage completed: {stage} (no start time recorded)")
            return None
        duration_ms = int((self._clock() - started) * 1000)
        timing['duration_ms'] = duration_ms
        self.write_log(job, f"Stage completed: {stage} ({duration_ms}ms)")
        return duration_ms

    def update_status(self, job: Job, status: JobStatus) -> None:
        old = job.status
        if status == old:
            return
        if status not in ALLOWED_TRANSITIONS[old]:
            raise InvalidTransitionError(f"{job.job_id}: {old} -> {status} is not allowed")
        job.status = status
        self.write_log(job, f"Status changed: {old} → {status}")
        logger.info(f"Job {job.job_id}: {old} → {status}")

    def fail(self, job: Job, error: str) -> None:
        """Mark a job failed unless it already reached a terminal state."""
        job.diagnostics.error = error
        if not job.status.is_terminal:
            self.update_status(job, JobStatus.FAILED)

    def save_spec(self, job: Job, spec: ImprovedSpec) -> Path:
        job.spec = spec
        job.paths.workspace_dir.mkdir(parents=True, exist_ok=True)
        spec_path = job.paths.workspace_dir / 'spec.json'
        spec_path.write_text(json.dumps(spec.to_dict(), indent=2), encoding='utf-8')
        return spec_path

    def persist(self, job: Job) -> Path:
        job.paths.workspace_dir.mkdir(parents=True, exist_ok=True)
        job_path = job.paths.workspace_dir / 'job.json'
        job_path.write_text(json.dumps(job.to_dict(), indent=2), encoding='utf-8')
        return job_path

    def load(self, job_id: str) -> Job:
        job_path = self.work_base / job_id / 'job.json'
        job = Job.from_dict(json.loads(job_path.read_text(encoding='utf-8')))
        self._jobs[job_id] = job
        return job

    def summary(self, job: Job) -> str:
        lines = [
            f"Job ID: {job.job_id}",
            f"Project Type: {job.project_type}",
            f"Status: {job.status}",
            f"Created: {job.created_at}",
            f"Workspace: {job.paths.workspace_dir}",
            f"Output: {job.paths.output_dir}",
            f"Logs: {job.paths.logs_path}",
            f"Files: {job.generated_count}/{job.planned_count}",
        ]
        timings = [
            f"  {stage}: {t['duration_ms']}ms"
            for stage, t in job.diagnostics.stage_timings.items()
            if 'duration_ms' in t
        ]
        if timings:
            lines.append('Stage Timings:')
            lines.extend(timings)
        return '\n'.join(lines)

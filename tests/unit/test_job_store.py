"""Tests for job records, status transitions, logs and persistence."""

import json
import re
from pathlib import Path

import pytest

from codeforge.constants import JobStatus, ProjectType
from codeforge.services.generation.job_store import (
    FilePlanEntry,
    ImprovedSpec,
    JobInput,
    JobStore,
    generate_job_id,
    sanitize_for_path,
)
from codeforge.services.service_base import InvalidTransitionError, ValidationError


class FakeClock:
    def __init__(self):
        self.now = 50.0

    def __call__(self):
        return self.now


@pytest.fixture
def job(store):
    return store.create_job(ProjectType.STATIC_SITE, JobInput(user_message='A portfolio', user_id='u1'))


@pytest.mark.unit
class TestJobCreation:

    def test_job_id_format(self):
        job_id = generate_job_id()
        assert re.fullmatch(r'job-[0-9a-z]+-[0-9a-z]{6}', job_id)
        assert generate_job_id() != job_id

    def test_create_job_paths(self, store, settings):
        job = store.create_job(ProjectType.CHAT_BOT, JobInput('a bot'), job_id='job-fixed')

        assert job.status == JobStatus.CREATED
        assert job.paths.workspace_dir == settings.work_base / 'job-fixed'
        assert job.paths.output_dir == settings.output_base / 'job-fixed'
        assert job.paths.logs_path == settings.log_base / 'job-fixed.log'
        assert job.paths.generated_dir == settings.work_base / 'job-fixed' / 'generated'
        assert store.get('job-fixed') is job

    def test_file_plan_entry_requires_path(self):
        with pytest.raises(ValidationError):
            FilePlanEntry.from_dict({'purpose': 'no path'})
        assert FilePlanEntry.from_dict({'path': ' a.html ', 'purpose': None}).path == 'a.html'

    def test_set_output_to_logs_dir(self, store, job, tmp_path):
        output = store.set_output_to_logs_dir(job, 'alice smith', None, '#general!', logs_root=tmp_path)

        assert output == tmp_path / 'alice-smith' / 'dms' / '-general-' / 'generated' / job.job_id
        assert job.paths.output_dir == output

        in_guild = store.set_output_to_logs_dir(job, 'bob', 'My Guild', 'dev', logs_root=tmp_path)
        assert in_guild.parts[-4] == 'My-Guild'

    def test_sanitize_for_path(self):
        assert sanitize_for_path('../etc/passwd') == '---etc-passwd'


@pytest.mark.unit
class TestStatusTransitions:

    def test_forward_path_to_done(self, store, job):
        for status in (JobStatus.SPEC_GENERATED, JobStatus.PLANNED, JobStatus.GENERATED, JobStatus.DONE):
            store.update_status(job, status)
        assert job.status == JobStatus.DONE

    @pytest.mark.parametrize('start', [
        JobStatus.CREATED, JobStatus.SPEC_GENERATED, JobStatus.PLANNED, JobStatus.GENERATED,
    ])
    def test_failed_reachable_from_non_terminal(self, store, job, start):
        job.status = start
        store.update_status(job, JobStatus.FAILED)
        assert job.status == JobStatus.FAILED

    @pytest.mark.parametrize('start,target', [
        (JobStatus.PLANNED, JobStatus.SPEC_GENERATED),
        (JobStatus.CREATED, JobStatus.PLANNED),
        (JobStatus.PLANNED, JobStatus.DONE),
        (JobStatus.DONE, JobStatus.FAILED),
        (JobStatus.FAILED, JobStatus.DONE),
    ])
    def test_invalid_transitions_raise(self, store, job, start, target):
        job.status = start
        with pytest.raises(InvalidTransitionError):
            store.update_status(job, target)
        assert job.status == start

    def test_same_status_is_noop(self, store, job):
        store.update_status(job, JobStatus.CREATED)
        assert job.status == JobStatus.CREATED

    def test_fail_records_error_and_skips_terminal(self, store, job):
        store.fail(job, 'boom')
        assert job.status == JobStatus.FAILED
        assert job.diagnostics.error == 'boom'

        store.fail(job, 'again')
        assert job.status == JobStatus.FAILED


@pytest.mark.unit
class TestJobLogAndTimings:

    def test_write_log_appends_timestamped_lines(self, store, job):
        store.write_log(job, 'first')
        store.write_log(job, 'second')

        lines = job.paths.logs_path.read_text(encoding='utf-8').splitlines()
        assert len(lines) == 2
        assert re.match(r'^\[\d{4}-\d{2}-\d{2}T.*\] first$', lines[0])

    def test_write_log_never_raises(self, store, job, tmp_path):
        blocker = tmp_path / 'blocker'
        blocker.write_text('not a directory')
        job.paths.logs_path = blocker / 'job.log'

        store.write_log(job, 'lost line')

    def test_stage_timings(self, settings, job):
        clock = FakeClock()
        store = JobStore(settings, clock=clock)

        store.mark_stage_start(job, 'generation')
        clock.now += 1.25
        duration = store.mark_stage_end(job, 'generation')

        assert duration == 1250
        timing = job.diagnostics.stage_timings['generation']
        assert timing['duration_ms'] == 1250
        assert 'start' in timing and 'end' in timing

    def test_stage_end_without_start(self, store, job):
        assert store.mark_stage_end(job, 'zip') is None
        assert 'duration_ms' not in job.diagnostics.stage_timings['zip']

    def test_summary(self, store, job):
        job.plan.file_plan = [FilePlanEntry('index.html')]
        summary = store.summary(job)

        assert f"Job ID: {job.job_id}" in summary
        assert 'Files: 0/1' in summary
        assert 'Status: created' in summary


@pytest.mark.unit
class TestPersistence:

    def test_save_spec(self, store, job):
        path = store.save_spec(job, ImprovedSpec(title='Folio', acceptance_checklist=['dark mode']))

        assert job.spec.title == 'Folio'
        assert json.loads(path.read_text(encoding='utf-8'))['acceptance_checklist'] == ['dark mode']

    def test_persist_and_load_roundtrip(self, settings, store, job):
        job.plan.file_plan = [FilePlanEntry('index.html', 'home')]
        job.spec = ImprovedSpec(title='Folio', primary_file='index.html')
        job.diagnostics.add_tokens('premium', 500)
        job.zip_path = Path('/tmp/x.zip')
        store.persist(job)

        loaded = JobStore(settings).load(job.job_id)

        assert loaded.job_id == job.job_id
        assert loaded.status == job.status
        assert loaded.plan.file_plan == job.plan.file_plan
        assert loaded.spec.title == 'Folio'
        assert loaded.diagnostics.token_usage['premium'] == 500
        assert loaded.zip_path == Path('/tmp/x.zip')
        assert loaded.input.user_message == 'A portfolio'

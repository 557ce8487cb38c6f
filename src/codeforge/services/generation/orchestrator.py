"""Pipeline Orchestrator
=======================

Runs one job end to end:

    spec/plan (collaborator) -> batches -> consistency pass
        -> write workspace -> copy to output -> zip -> done

Batches run strictly in order, each fully resolved (retries included)
before the next starts, with a tier-dependent pause between batches.
A job that ends with zero files is marked failed and PipelineFailure is
raised; no archive is created for it.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Protocol

from codeforge.config.settings import Settings, get_settings
from codeforge.constants import JobStatus
from codeforge.services.generation.api_client import CompletionClient
from codeforge.services.generation.artifacts import (
    copy_to_output,
    create_zip,
    is_safe_relative_path,
    write_generated_files,
)
from codeforge.services.generation.batch_planner import BatchPlanner
from codeforge.services.generation.config import GenerationConfig
from codeforge.services.generation.consistency import ConsistencyChecker
from codeforge.services.generation.job_store import (
    CodegenResult,
    FilePlanEntry,
    GeneratedFile,
    ImprovedSpec,
    Job,
    JobStore,
)
from codeforge.services.generation.prompt_loader import PromptLoader
from codeforge.services.generation.worker import GenerationWorker
from codeforge.services.rate_limiter import BatchPacer
from codeforge.services.service_base import InvalidTransitionError, PipelineFailure
from codeforge.utils.notifications import Notifier

logger = logging.getLogger(__name__)


class SpecGenerator(Protocol):
    """Produces the refined spec and the file plan for a job."""

    async def generate_spec(self, job: Job) -> ImprovedSpec:
        ...

    async def generate_plan(self, job: Job) -> List[FilePlanEntry]:
        ...


class PipelineOrchestrator:
    """Composes JobStore, BatchPlanner, GenerationWorker and the consistency pass.

    Usage:
        orchestrator = PipelineOrchestrator(client)
        job = orchestrator.store.create_job(ProjectType.STATIC_SITE, JobInput("a landing page"))
        await orchestrator.run(job, spec_generator)
    """

    def __init__(
        self,
        client: CompletionClient,
        config: Optional[GenerationConfig] = None,
        store: Optional[JobStore] = None,
        settings: Optional[Settings] = None,
        notifier: Optional[Notifier] = None,
        planner: Optional[BatchPlanner] = None,
        worker: Optional[GenerationWorker] = None,
        pacer: Optional[BatchPacer] = None,
    ):
        self.settings = settings or get_settings()
        self.config = config or GenerationConfig.from_settings(self.settings)
        self.store = store or JobStore(self.settings)
        self.notifier = notifier or Notifier()
        self.planner = planner or BatchPlanner()
        prompts = PromptLoader()
        self.worker = worker or GenerationWorker(client, self.config, prompts=prompts, store=self.store)
        self.consistency = ConsistencyChecker(client, self.config, prompts=prompts, store=self.store)
        self.pacer = pacer or BatchPacer(
            paid_delay=self.config.paid_batch_delay,
            free_delay=self.config.free_batch_delay,
            tier_override=self.config.tier_override,
        )

    async def _set_status(self, job: Job, status: JobStatus) -> None:
        previous = job.status
        self.store.update_status(job, status)
        await self.notifier.notify('status_changed', job_id=job.job_id, previous=str(previous), status=str(status))

    async def _prepare(self, job: Job, spec_generator: Optional[SpecGenerator]) -> None:
        """Bring the job to ``planned`` via the spec generator if needed."""
        if job.status == JobStatus.CREATED and spec_generator is not None:
            self.store.mark_stage_start(job, 'spec')
            spec = await spec_generator.generate_spec(job)
            self.store.save_spec(job, spec)
            self.store.mark_stage_end(job, 'spec')
            await self._set_status(job, JobStatus.SPEC_GENERATED)

        if job.status == JobStatus.SPEC_GENERATED and spec_generator is not None:
            self.store.mark_stage_start(job, 'plan')
            job.plan.file_plan = self._safe_entries(job, await spec_generator.generate_plan(job))
            self.store.mark_stage_end(job, 'plan')
            await self._set_status(job, JobStatus.PLANNED)

        if job.status != JobStatus.PLANNED:
            raise InvalidTransitionError(f"{job.job_id}: cannot generate from status {job.status}")

    def _safe_entries(self, job: Job, entries: List[FilePlanEntry]) -> List[FilePlanEntry]:
        kept = []
        for entry in entries:
            if is_safe_relative_path(entry.path):
                kept.append(entry)
                continue
            logger.warning(f"Plan for {job.job_id} has unsafe path {entry.path!r}; dropped")
            self.store.write_log(job, f"✗ Dropped unsafe planned path {entry.path!r}")
            job.diagnostics.failed_paths.append(entry.path)
        return kept

    async def run(self, job: Job, spec_generator: Optional[SpecGenerator] = None) -> None:
        """Run the whole pipeline for ``job``.

        Raises:
            PipelineFailure: zero files were generated (job is marked failed)
            InvalidTransitionError: job is not plannable from its status
            OSError: writing, copying or zipping failed (job is marked failed)
        """
        self.store.ensure_dirs(job)
        self.store.write_log(job, f"Starting pipeline for {job.job_id}")
        try:
            await self._prepare(job, spec_generator)
            generated = await self._generate(job)
        except PipelineFailure:
            raise
        except Exception as e:
            self.store.fail(job, f"{type(e).__name__}: {e}")
            self.store.persist(job)
            raise

        if not generated:
            self.store.fail(job, 'No files were generated')
            self.store.persist(job)
            await self.notifier.notify('job_failed', job_id=job.job_id, reason='no files')
            raise PipelineFailure(job.job_id)

        await self._set_status(job, JobStatus.GENERATED)

        try:
            self._write_artifacts(job)
        except Exception as e:
            logger.error(f"Artifact stage failed for {job.job_id}: {e}")
            self.store.fail(job, f"{type(e).__name__}: {e}")
            self.store.persist(job)
            raise

        await self._set_status(job, JobStatus.DONE)
        self.store.persist(job)
        self.store.write_log(job, self.store.summary(job))
        await self.notifier.notify(
            'job_done',
            job_id=job.job_id,
            files=job.generated_count,
            planned=job.planned_count,
            partial=job.is_partial,
            zip_path=str(job.zip_path),
        )

    async def _generate(self, job: Job) -> List[GeneratedFile]:
        plan = self.planner.plan(job.plan.file_plan)
        budget = self.config.new_budget()
        generated: Dict[str, GeneratedFile] = {}

        self.store.write_log(job, f"🔄 Generation strategy: {len(plan)} batch(es)")
        for index, batch in enumerate(plan.batches, start=1):
            self.store.write_log(job, f"   Batch {index}: [{batch.type}] {', '.join(batch.paths)}")

        self.store.mark_stage_start(job, 'generation')
        for index, batch in enumerate(plan.batches):
            await self.notifier.notify('batch_started', job_id=job.job_id, batch=str(batch.type), files=batch.paths)
            outcome = await self.worker.run_batch(job, batch, generated, budget)
            await self.notifier.notify(
                'batch_completed',
                job_id=job.job_id,
                batch=str(batch.type),
                generated=outcome.generated,
                failed=outcome.failed,
            )
            if index < len(plan) - 1:
                await self.pacer.pause(outcome.models_used)
        self.store.mark_stage_end(job, 'generation')

        files = list(generated.values())
        self.store.mark_stage_start(job, 'consistency')
        await self.consistency.check(job, files, budget)
        self.store.mark_stage_end(job, 'consistency')

        job.diagnostics.budget = budget.to_dict()
        premium_spent = job.diagnostics.token_usage.get('premium', 0)
        cost = self.config.estimate_cost(premium_spent)
        job.codegen_result = CodegenResult(
            files=files,
            notes=(
                f"Generated {len(files)}/{job.planned_count} files using hybrid model strategy. "
                f"Premium: {premium_spent} tokens. Est. cost: ${cost:.4f}"
            ),
            entrypoint=job.spec.primary_file if job.spec else None,
        )
        self.store.write_log(job, f"✓ Generated {len(files)}/{job.planned_count} files")
        self.store.write_log(job, f"💵 Est. cost: ${cost:.4f}")
        return files

    def _write_artifacts(self, job: Job) -> None:
        self.store.mark_stage_start(job, 'artifacts')
        files = job.codegen_result.files if job.codegen_result else []
        write_generated_files(job, files)
        self.store.write_log(job, f"✓ Wrote {len(files)} files to disk")
        copied = copy_to_output(job)
        self.store.write_log(job, f"✓ Copied {copied} files to output directory")
        job.zip_path = create_zip(job.paths.output_dir, self.settings.resolved_zip_base / f"{job.job_id}.zip")
        self.store.write_log(job, f"✓ Archive {job.zip_path}")
        self.store.mark_stage_end(job, 'artifacts')

"""Generation Worker
====================

Executes one batch of a job's file plan.

- Foundation batch: ONE premium call returning every file of the batch as a
  JSON array. Atomic: it is never retried.
- Other batches: one call per file, fanned out with asyncio.gather and
  awaited together. Files that fail are retried exactly once after
  ``retry_delay`` with the up-to-date generated-files context. A file that
  fails its retry is dropped and recorded in the job diagnostics.

Model selection: the premium model is used for a non-foundation file only
when the file is a priority file AND the job budget (after the consistency
reserve) still covers its estimated cost. The estimate is reserved at
selection time. Everything else goes to the fallback model.

Generated files are keyed by planned path, so a retried file never appears
twice.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple

from codeforge.constants import BatchType, ModelTier
from codeforge.services.generation.api_client import Completion, CompletionClient
from codeforge.services.generation.artifacts import is_safe_relative_path
from codeforge.services.generation.batch_planner import (
    Batch,
    fallback_max_tokens,
    is_priority_file,
    token_allocation_for,
)
from codeforge.services.generation.config import GenerationConfig, ModelBudget
from codeforge.services.generation.job_store import FilePlanEntry, GeneratedFile, Job, JobStore
from codeforge.services.generation.prompt_loader import PromptLoader
from codeforge.services.generation.response_parser import parse_file_array, parse_file_response
from codeforge.services.service_base import CompletionError, ParseError

logger = logging.getLogger(__name__)

# Failures a single file can recover from by retrying
RECOVERABLE_ERRORS = (CompletionError, ParseError, asyncio.TimeoutError, ConnectionError)


@dataclass
class FileOutcome:
    """Result of one per-file call."""
    entry: FilePlanEntry
    model: str
    file: Optional[GeneratedFile] = None
    tokens: int = 0
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.file is not None


@dataclass
class BatchOutcome:
    """What one batch produced."""
    batch_type: BatchType
    generated: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    retried: List[str] = field(default_factory=list)
    models_used: Set[str] = field(default_factory=set)
    premium_tokens: int = 0
    fallback_tokens: int = 0
    calls: int = 0
    duration: float = 0.0


def normalize_path(path: str) -> str:
    path = path.strip().replace('\\', '/')
    while path.startswith('./'):
        path = path[2:]
    return path.lstrip('/')


class GenerationWorker:
    """Runs batches against a completion client under a job-scoped budget.

    Usage:
        worker = GenerationWorker(client, GenerationConfig())
        budget = worker.config.new_budget()
        generated = {}
        outcome = await worker.run_batch(job, batch, generated, budget)
    """

    def __init__(
        self,
        client: CompletionClient,
        config: Optional[GenerationConfig] = None,
        prompts: Optional[PromptLoader] = None,
        store: Optional[JobStore] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.client = client
        self.config = config or GenerationConfig()
        self.prompts = prompts or PromptLoader()
        self.store = store
        self._sleep = sleep

    def _log(self, job: Job, line: str) -> None:
        if self.store is not None:
            self.store.write_log(job, line)

    def _tier_of(self, model: str) -> ModelTier:
        return ModelTier.PAID if model == self.config.premium_model else ModelTier.FREE

    def _options(self, model: str, max_tokens: int) -> Dict[str, object]:
        options: Dict[str, object] = {
            'max_tokens': max_tokens,
            'temperature': self.config.temperature,
            'timeout': self.config.timeout,
        }
        if model == self.config.premium_model and self.config.reasoning_for_premium:
            options['reasoning'] = True
        return options

    # ===========================
    # MODEL SELECTION
    # ===========================

    def select_model(self, entry: FilePlanEntry, budget: ModelBudget) -> Tuple[str, int]:
        """Pick (model, max_tokens) for a non-foundation file.

        Reserves the file's estimated premium cost when the premium model is
        chosen. Never awaits.
        """
        estimate = token_allocation_for(entry.path, self.config.token_allocation)
        if is_priority_file(entry) and budget.try_reserve(estimate):
            return self.config.premium_model, estimate
        return self.config.fallback_model, fallback_max_tokens(entry.path)

    # ===========================
    # BATCH EXECUTION
    # ===========================

    async def run_batch(
        self,
        job: Job,
        batch: Batch,
        generated: Dict[str, GeneratedFile],
        budget: ModelBudget,
    ) -> BatchOutcome:
        """Execute one batch, adding successes to ``generated`` in place."""
        started = time.monotonic()
        label = 'Foundation (Single Call)' if batch.is_foundation else 'Parallel'
        self._log(job, f"📦 Batch [{batch.type}] [{label}]: {len(batch)} file(s) - {', '.join(batch.paths)}")

        if batch.is_foundation:
            outcome = await self._run_foundation(job, batch, generated, budget)
        else:
            outcome = await self._run_parallel(job, batch, generated, budget)

        outcome.duration = time.monotonic() - started
        for path in outcome.failed:
            if path not in job.diagnostics.failed_paths:
                job.diagnostics.failed_paths.append(path)
        job.diagnostics.add_tokens('premium', outcome.premium_tokens)
        job.diagnostics.add_tokens('fallback', outcome.fallback_tokens)

        self._log(
            job,
            f"✓ Batch [{batch.type}] complete: {len(outcome.generated)}/{len(batch)} files "
            f"in {outcome.duration:.1f}s ({outcome.calls} call(s))"
        )
        logger.info(
            f"Job {job.job_id} batch {batch.type}: {len(outcome.generated)}/{len(batch)} ok, "
            f"{len(outcome.failed)} dropped, premium budget left {budget.available_for_files()}"
        )
        return outcome

    async def _run_foundation(
        self,
        job: Job,
        batch: Batch,
        generated: Dict[str, GeneratedFile],
        budget: ModelBudget,
    ) -> BatchOutcome:
        outcome = BatchOutcome(batch_type=batch.type)
        model = self.config.premium_model
        allowance = budget.foundation_allowance
        outcome.models_used.add(model)
        outcome.calls = 1

        system_prompt, user_prompt = self.prompts.get_foundation_prompts(job, batch.entries)
        messages = [
            {'role': 'system', 'content': system_prompt},
            {'role': 'user', 'content': user_prompt},
        ]
        # The allowance is consumed as a whole when the call is issued
        budget.charge(allowance)
        try:
            completion = await self.client.complete(messages, model, self._options(model, allowance))
        except RECOVERABLE_ERRORS as e:
            logger.warning(f"Foundation call failed for {job.job_id}: {e}")
            self._log(job, f"  ✗ Foundation batch failed: {e}")
            outcome.failed = batch.paths
            return outcome

        outcome.premium_tokens += completion.total_tokens or allowance
        job.diagnostics.models_used['foundation'] = model

        try:
            files = parse_file_array(completion.content)
        except ParseError as e:
            logger.warning(f"Foundation response for {job.job_id} unparseable: {e}")
            self._log(job, "  ✗ Foundation batch failed: response was not a JSON file array")
            outcome.failed = batch.paths
            return outcome

        planned = {normalize_path(p): p for p in batch.paths}
        rejected: List[str] = []
        for item in files:
            key = planned.get(normalize_path(item['path']), normalize_path(item['path']))
            if not is_safe_relative_path(key):
                logger.warning(f"Foundation response for {job.job_id} has unsafe path {item['path']!r}; dropped")
                self._log(job, f"  ✗ Dropped unsafe path {item['path']!r}")
                rejected.append(item['path'])
                continue
            generated[key] = GeneratedFile(path=key, content=item['content'])
            if key not in outcome.generated:
                outcome.generated.append(key)
            self._log(job, f"  ✓ {key} ({len(item['content'])} chars)")

        outcome.failed = [p for p in batch.paths if p not in generated]
        for path in outcome.failed:
            self._log(job, f"  ✗ {path} missing from foundation response")
        outcome.failed.extend(rejected)
        return outcome

    async def _run_parallel(
        self,
        job: Job,
        batch: Batch,
        generated: Dict[str, GeneratedFile],
        budget: ModelBudget,
    ) -> BatchOutcome:
        outcome = BatchOutcome(batch_type=batch.type)

        results = await self._fan_out(job, batch.entries, generated, budget)
        failed = self._collect(results, generated, outcome)

        if failed:
            outcome.retried = [e.path for e in failed]
            logger.info(f"Retrying {len(failed)} failed file(s) in {self.config.retry_delay:.1f}s")
            self._log(job, f"🔄 Retrying {len(failed)} failed file(s)...")
            await self._sleep(self.config.retry_delay)

            retry_results = await self._fan_out(job, failed, generated, budget)
            still_failed = self._collect(retry_results, generated, outcome)
            for result in retry_results:
                if result.success:
                    self._log(job, f"  ✓ Retry success: {result.entry.path}")
            for entry in still_failed:
                self._log(job, f"  ✗ Retry failed, dropping: {entry.path}")
            outcome.failed = [e.path for e in still_failed]
        return outcome

    async def _fan_out(
        self,
        job: Job,
        entries: List[FilePlanEntry],
        generated: Dict[str, GeneratedFile],
        budget: ModelBudget,
    ) -> List[FileOutcome]:
        # Siblings see the same snapshot; results merge only after all resolve
        snapshot = dict(generated)
        return list(await asyncio.gather(
            *(self._generate_file(job, entry, snapshot, budget) for entry in entries)
        ))

    def _collect(
        self,
        results: List[FileOutcome],
        generated: Dict[str, GeneratedFile],
        outcome: BatchOutcome,
    ) -> List[FilePlanEntry]:
        failed: List[FilePlanEntry] = []
        for result in results:
            outcome.calls += 1
            outcome.models_used.add(result.model)
            if self._tier_of(result.model) == ModelTier.PAID:
                outcome.premium_tokens += result.tokens
            else:
                outcome.fallback_tokens += result.tokens
            if result.success:
                generated[result.entry.path] = result.file
                if result.entry.path not in outcome.generated:
                    outcome.generated.append(result.entry.path)
            else:
                failed.append(result.entry)
        return failed

    async def _generate_file(
        self,
        job: Job,
        entry: FilePlanEntry,
        context: Dict[str, GeneratedFile],
        budget: ModelBudget,
    ) -> FileOutcome:
        model, max_tokens = self.select_model(entry, budget)
        system_prompt, user_prompt = self.prompts.get_file_prompts(job, entry, context)
        messages = [
            {'role': 'system', 'content': system_prompt},
            {'role': 'user', 'content': user_prompt},
        ]
        outcome = FileOutcome(entry=entry, model=model)
        try:
            completion: Completion = await self.client.complete(messages, model, self._options(model, max_tokens))
            outcome.tokens = completion.total_tokens
            parsed = parse_file_response(completion.content)
        except RECOVERABLE_ERRORS as e:
            outcome.error = str(e) or type(e).__name__
            logger.warning(f"{entry.path} failed on {model}: {outcome.error}")
            self._log(job, f"  ✗ Error generating {entry.path}: {outcome.error}")
            return outcome

        if normalize_path(parsed['path']) != normalize_path(entry.path):
            logger.debug(f"Model returned path {parsed['path']!r} for {entry.path!r}; keeping planned path")
        outcome.file = GeneratedFile(path=entry.path, content=parsed['content'])
        job.diagnostics.models_used[entry.path] = model
        self._log(job, f"  ✓ Generated {entry.path} ({len(parsed['content'])} chars, {outcome.tokens} tokens) [{model}]")
        return outcome

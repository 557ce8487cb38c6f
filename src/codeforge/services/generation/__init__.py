"""Chunked Generation Pipeline
==============================

Turns a file plan into a generated project:

Components:
- config.py: GenerationConfig and the job-scoped ModelBudget
- api_client.py: OpenRouter completion client (aiohttp)
- job_store.py: Job data model, status machine, logs and persistence
- batch_planner.py: file classification and ordered batches
- prompt_loader.py: Jinja2 prompt templates
- response_parser.py: JSON extraction from model responses
- worker.py: per-batch execution, model selection, retries
- consistency.py: advisory cross-page review
- artifacts.py: workspace write, output copy, zip
- orchestrator.py: PipelineOrchestrator.run
- job_queue.py: sequential queue of generation jobs
"""

from .api_client import Completion, CompletionClient, OpenRouterClient, TokenUsage, get_api_client
from .batch_planner import Batch, BatchPlan, BatchPlanner, detect_file_kind
from .config import GenerationConfig, ModelBudget
from .job_queue import GenerationQueue, QueueItem, get_generation_queue
from .job_store import (
    CodegenResult,
    FilePlanEntry,
    GeneratedFile,
    ImprovedSpec,
    Job,
    JobInput,
    JobStore,
)
from .orchestrator import PipelineOrchestrator, SpecGenerator
from .worker import BatchOutcome, GenerationWorker

__all__ = [
    # Config
    'GenerationConfig',
    'ModelBudget',
    # Client
    'Completion',
    'CompletionClient',
    'OpenRouterClient',
    'TokenUsage',
    'get_api_client',
    # Jobs
    'CodegenResult',
    'FilePlanEntry',
    'GeneratedFile',
    'ImprovedSpec',
    'Job',
    'JobInput',
    'JobStore',
    # Planning and execution
    'Batch',
    'BatchPlan',
    'BatchPlanner',
    'detect_file_kind',
    'BatchOutcome',
    'GenerationWorker',
    'PipelineOrchestrator',
    'SpecGenerator',
    # Queue
    'GenerationQueue',
    'QueueItem',
    'get_generation_queue',
]

#!/usr/bin/env python3
"""
Run one generation job from a plan file
=======================================

The plan file is JSON holding the refined spec and the file plan:

    {
      "project_type": "static_site",
      "message": "A landing page for a coffee shop",
      "spec": {"title": "Bean There", "primary_file": "index.html"},
      "files": [
        {"path": "index.html", "purpose": "Landing page"},
        {"path": "styles.css", "purpose": "Shared styles"}
      ]
    }

Usage:
    codeforge-generate --plan plan.json
    codeforge-generate --plan plan.json --message "Make it dark themed"
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

from codeforge.config.settings import get_settings
from codeforge.constants import ProjectType
from codeforge.services.generation.api_client import OpenRouterClient
from codeforge.services.generation.job_store import FilePlanEntry, ImprovedSpec, Job, JobInput
from codeforge.services.generation.orchestrator import PipelineOrchestrator
from codeforge.services.service_base import PipelineFailure, ServiceError, ValidationError
from codeforge.utils.logging_config import setup_application_logging

logger = logging.getLogger(__name__)


class StaticSpecGenerator:
    """Serves the project spec and file plan read from a plan file."""

    def __init__(self, spec: ImprovedSpec, file_plan: List[FilePlanEntry]):
        self.spec = spec
        self.file_plan = file_plan

    async def generate_spec(self, job: Job) -> ImprovedSpec:
        return self.spec

    async def generate_plan(self, job: Job) -> List[FilePlanEntry]:
        return list(self.file_plan)


def load_plan(path: Path) -> Dict[str, Any]:
    """Read and validate a plan file."""
    try:
        data = json.loads(path.read_text(encoding='utf-8'))
    except (OSError, json.JSONDecodeError) as e:
        raise ValidationError(f"Cannot read plan file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ValidationError("Plan file must hold a JSON object")
    files = data.get('files')
    if not isinstance(files, list) or not files:
        raise ValidationError("Plan file needs a non-empty 'files' list")
    return data


def build_spec_generator(data: Dict[str, Any], project_type: ProjectType) -> StaticSpecGenerator:
    spec_data = dict(data.get('spec') or {})
    spec_data.setdefault('project_type', project_type.value)
    spec = ImprovedSpec.from_dict(spec_data)
    file_plan = [FilePlanEntry.from_dict(item) for item in data['files']]
    return StaticSpecGenerator(spec, file_plan)


async def run(plan_path: Path, message: Optional[str] = None) -> Job:
    data = load_plan(plan_path)
    project_type = ProjectType(data.get('project_type', ProjectType.STATIC_SITE.value))
    spec_generator = build_spec_generator(data, project_type)

    settings = get_settings()
    orchestrator = PipelineOrchestrator(OpenRouterClient(settings), settings=settings)
    user_message = message or data.get('message') or spec_generator.spec.title
    job = orchestrator.store.create_job(project_type, JobInput(user_message=user_message, source_context='cli'))
    await orchestrator.run(job, spec_generator)
    return job


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description='Generate a project from a spec and file plan',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )
    parser.add_argument(
        '--plan',
        type=Path,
        required=True,
        help='Path to the JSON plan file'
    )
    parser.add_argument(
        '--message',
        type=str,
        help='User request text (defaults to the plan message or spec title)'
    )
    args = parser.parse_args(argv)

    # .env must be loaded before settings are first read
    load_dotenv()
    try:
        setup_application_logging()
    except ValidationError as e:
        print(f"❌ Error: {e}")
        return 2

    try:
        job = asyncio.run(run(args.plan, args.message))
    except PipelineFailure as e:
        print(f"❌ {e}")
        return 1
    except ServiceError as e:
        print(f"❌ Error: {e}")
        return 2

    print(f"✅ Job {job.job_id}: {job.generated_count}/{job.planned_count} files")
    if job.is_partial:
        print(f"⚠️  Partial result, dropped: {', '.join(job.diagnostics.failed_paths)}")
    print(f"📁 Output: {job.paths.output_dir}")
    print(f"📦 Archive: {job.zip_path}")
    return 0


if __name__ == "__main__":
    sys.exit(main())

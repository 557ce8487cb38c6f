"""Artifact writing.

Materializes generated files into the job workspace, mirrors them to the
output directory and packs the output into ``<zip_base>/<job_id>.zip``.
"""

import logging
import shutil
import zipfile
from pathlib import Path
from typing import Iterable, List

from codeforge.services.generation.job_store import GeneratedFile, Job
from codeforge.services.service_base import ValidationError

logger = logging.getLogger(__name__)


def is_safe_relative_path(relative: str) -> bool:
    """True when ``relative`` cannot climb out of the directory it is joined to."""
    parts = relative.replace('\\', '/').lstrip('/').split('/')
    if not parts[0] or ':' in parts[0]:
        return False
    return '..' not in parts


def safe_join(base: Path, relative: str) -> Path:
    """Resolve ``relative`` under ``base``; reject anything that escapes it."""
    cleaned = relative.replace('\\', '/').lstrip('/')
    if not is_safe_relative_path(relative):
        raise ValidationError(f"Unsafe file path: {relative!r}")
    target = (base / cleaned).resolve()
    if not target.is_relative_to(base.resolve()):
        raise ValidationError(f"Unsafe file path: {relative!r}")
    return target


def write_generated_files(job: Job, files: Iterable[GeneratedFile]) -> List[Path]:
    generated_dir = job.paths.generated_dir
    generated_dir.mkdir(parents=True, exist_ok=True)
    written: List[Path] = []
    for f in files:
        target = safe_join(generated_dir, f.path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(f.content, encoding='utf-8')
        written.append(target)
    logger.info(f"Wrote {len(written)} file(s) to {generated_dir}")
    return written


def copy_to_output(job: Job) -> int:
    """Mirror generated/ into the output directory; returns files copied."""
    source = job.paths.generated_dir
    if not source.exists():
        return 0
    shutil.copytree(source, job.paths.output_dir, dirs_exist_ok=True)
    copied = sum(1 for p in source.rglob('*') if p.is_file())
    logger.info(f"Copied {copied} file(s) to {job.paths.output_dir}")
    return copied


def create_zip(source_dir: Path, zip_path: Path) -> Path:
    """Zip every file under ``source_dir`` with paths relative to it."""
    zip_path.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(zip_path, 'w', zipfile.ZIP_DEFLATED) as zf:
        for file_path in sorted(source_dir.rglob('*')):
            if file_path.is_file():
                zf.write(file_path, file_path.relative_to(source_dir).as_posix())
    logger.info(f"Created archive {zip_path} ({zip_path.stat().st_size} bytes)")
    return zip_path


def list_output_files(job: Job) -> List[str]:
    """Relative paths of every file in the job's output directory."""
    output_dir = job.paths.output_dir
    if not output_dir.exists():
        return []
    return sorted(p.relative_to(output_dir).as_posix() for p in output_dir.rglob('*') if p.is_file())

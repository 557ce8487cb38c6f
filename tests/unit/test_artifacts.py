"""Tests for writing, copying and zipping generated files."""

import zipfile

import pytest

from codeforge.services.generation.artifacts import (
    copy_to_output,
    create_zip,
    is_safe_relative_path,
    list_output_files,
    safe_join,
    write_generated_files,
)
from codeforge.services.generation.job_store import GeneratedFile
from codeforge.services.service_base import ValidationError


@pytest.mark.unit
class TestSafeJoin:

    def test_nested_path(self, tmp_path):
        assert safe_join(tmp_path, 'css/site.css') == (tmp_path / 'css' / 'site.css').resolve()

    def test_leading_slash_and_backslashes(self, tmp_path):
        assert safe_join(tmp_path, '/js\\app.js') == (tmp_path / 'js' / 'app.js').resolve()

    @pytest.mark.parametrize('path', ['../escape.txt', 'a/../../b', '', '/'])
    def test_rejects_escapes(self, tmp_path, path):
        with pytest.raises(ValidationError):
            safe_join(tmp_path, path)

    @pytest.mark.parametrize('path,expected', [
        ('index.html', True),
        ('assets/img/logo.svg', True),
        ('/js\\app.js', True),
        ('../escape.js', False),
        ('css/../../x.css', False),
        ('..\\win.txt', False),
        ('C:/boot.ini', False),
        ('', False),
    ])
    def test_is_safe_relative_path(self, path, expected):
        assert is_safe_relative_path(path) is expected


@pytest.mark.unit
class TestArtifacts:

    def test_write_copy_zip(self, make_job, tmp_path):
        job = make_job(['index.html', 'css/site.css'])
        files = [GeneratedFile('index.html', '<h1>hi</h1>'), GeneratedFile('css/site.css', 'h1{}')]

        written = write_generated_files(job, files)
        copied = copy_to_output(job)
        zip_path = create_zip(job.paths.output_dir, tmp_path / 'zips' / f"{job.job_id}.zip")

        assert len(written) == 2
        assert (job.paths.generated_dir / 'css' / 'site.css').read_text(encoding='utf-8') == 'h1{}'
        assert copied == 2
        assert list_output_files(job) == ['css/site.css', 'index.html']
        with zipfile.ZipFile(zip_path) as zf:
            assert zf.namelist() == ['css/site.css', 'index.html']
            assert zf.read('index.html').decode('utf-8') == '<h1>hi</h1>'

    def test_traversal_in_generated_file_rejected(self, make_job):
        job = make_job(['index.html'])
        with pytest.raises(ValidationError):
            write_generated_files(job, [GeneratedFile('../../outside.html', 'x')])

    def test_copy_without_generated_dir(self, make_job):
        job = make_job(['index.html'])
        assert copy_to_output(job) == 0
        assert list_output_files(job) == []

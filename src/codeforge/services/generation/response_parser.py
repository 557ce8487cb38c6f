"""Model response parsing.

Models are asked for bare JSON but often wrap it in prose or markdown.
Strategies, in order:

1. parse the whole response
2. parse the first fenced ```json block
3. parse the outermost ``{...}`` (or ``[...]``) span

A result is accepted only if it has the expected shape; otherwise the next
strategy runs. When all fail, ParseError is raised.
"""

import json
import logging
import re
from typing import Any, Callable, Dict, List, Optional

from codeforge.services.service_base import ParseError

logger = logging.getLogger(__name__)

_FENCED_RE = re.compile(r'```(?:json)?\s*([\s\S]*?)\s*```')
_OBJECT_RE = re.compile(r'\{[\s\S]*\}')
_ARRAY_RE = re.compile(r'\[[\s\S]*\]')


def _candidates(raw: str, span_re: 're.Pattern[str]'):
    yield 'direct', raw.strip()
    fenced = _FENCED_RE.search(raw)
    if fenced:
        yield 'fenced', fenced.group(1)
    span = span_re.search(raw)
    if span:
        yield 'regex', span.group(0)


def _first_valid(raw: str, span_re: 're.Pattern[str]', accept: Callable[[Any], Optional[Any]], what: str) -> Any:
    if not isinstance(raw, str) or not raw.strip():
        raise ParseError(f"Empty response, expected {what}", raw or '')
    for method, text in _candidates(raw, span_re):
        try:
            data = json.loads(text)
        except (json.JSONDecodeError, ValueError):
            continue
        result = accept(data)
        if result is not None:
            logger.debug(f"Parsed {what} via {method}")
            return result
    raise ParseError(f"Could not parse {what} from response ({len(raw)} chars)", raw)


def _as_file(data: Any) -> Optional[Dict[str, str]]:
    if isinstance(data, dict) and isinstance(data.get('path'), str) and isinstance(data.get('content'), str):
        if data['path'].strip() and data['content']:
            return {'path': data['path'].strip(), 'content': data['content']}
    return None


def parse_file_response(raw: str) -> Dict[str, str]:
    """Parse a single ``{"path", "content"}`` object."""
    return _first_valid(raw, _OBJECT_RE, _as_file, 'file object')


def parse_file_array(raw: str) -> List[Dict[str, str]]:
    """Parse a non-empty array of file objects; invalid items are dropped."""
    def accept(data: Any) -> Optional[List[Dict[str, str]]]:
        if isinstance(data, dict) and isinstance(data.get('files'), list):
            data = data['files']
        if not isinstance(data, list):
            return None
        files = [f for f in (_as_file(item) for item in data) if f]
        if len(files) < len(data):
            logger.warning(f"Dropped {len(data) - len(files)} invalid file object(s) from array response")
        return files or None

    return _first_valid(raw, _ARRAY_RE, accept, 'file array')


def parse_json_object(raw: str) -> Dict[str, Any]:
    """Parse any JSON object (used for the consistency report)."""
    return _first_valid(raw, _OBJECT_RE, lambda d: d if isinstance(d, dict) else None, 'JSON object')

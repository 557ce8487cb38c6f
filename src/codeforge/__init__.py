"""
codeforge
=========

Orchestration core of a chat-triggered code-generation service: idempotent
request admission, cross-instance leases and the chunked generation pipeline.
"""

__version__ = '0.1.0'

__all__ = ['__version__']

"""Chunk Pipeline - chunked code generation scheduler.

This service drives multi-file code generation:
- Pipelines of generation chunks with explicit dependencies
- Round-based parallel execution with retry and cancellation
- Prompt-context cache for reusing previously sent conversation prefixes
"""

__version__ = "0.1.0"

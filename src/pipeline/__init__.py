"""Chunked generation pipelines.

Takes a chunk DAG (explicit or decomposed from a prompt) and drives it to
completion against a chunk executor, round by round.

Architecture (bottom-up):
- schemas: Pipeline / Chunk records, config, progress, and executor results
- chunk_store: Store contract and the shared ready-chunk ordering policy
- memory_store: In-process reference store
- db / sql_store: SQLite or PostgreSQL tables behind the same contract
- decomposition: Keyword rules turning a prompt into chunk inputs
- chunk_executor: Cache-aware executor around a generation function
- scheduler: Pipeline lifecycle, round execution, retries, progress
"""

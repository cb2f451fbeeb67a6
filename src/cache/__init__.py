"""Prompt-context cache.

- lru: OrderedDict-backed LRU map (O(1) touch and eviction)
- schemas: Cache entries, lookup results, stats, and configuration
- prompt_cache: PromptCache service (exact and prefix lookup, eviction, TTL sweep)
"""

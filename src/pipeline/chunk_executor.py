"""Cache-aware chunk executor.

Wraps a generation function with the prompt cache:

    messages = context files + chunk prompt
    cache.find_cache_hit(...)   -> log reusable prefix
    generate(system_prompt, messages, model)
    cache.store_context(...)    -> reuse by later chunks sharing the prefix
    store.set_chunk_output(...) -> when a store is attached

Chunks that share context files produce identical leading messages, so a
later chunk's lookup can hit the prefix cached by an earlier one.
"""

import logging
from typing import Callable, Optional

from src.cache.prompt_cache import PromptCache
from src.cache.schemas import Message
from src.llm.client import GENERATION_MODEL, GenerationOutput
from src.llm.tokens import estimate_tokens
from src.pipeline.chunk_store import ChunkStore
from src.pipeline.schemas import Chunk, ChunkExecutionResult, PipelineConfig

logger = logging.getLogger(__name__)

GenerateFn = Callable[[str, list[Message], str], GenerationOutput]
FileReader = Callable[[str], Optional[str]]

DEFAULT_SYSTEM_PROMPT = (
    "You are a senior software engineer generating one part of a larger "
    "project. Produce complete, working files for the requested part only."
)

CONTEXT_ACK = "Context received."

DEFAULT_CONTEXT_TOKENS = PipelineConfig().max_context_tokens


class CachedChunkExecutor:
    """Chunk executor that consults and feeds a PromptCache around generation.

    Context file contents are included while they fit the context budget:
    the owning pipeline's `config.max_context_tokens` when a store is
    attached, otherwise `max_context_tokens`. Files that do not fit are
    listed by name only.
    """

    def __init__(
        self,
        generate: GenerateFn,
        cache: PromptCache,
        model: str = GENERATION_MODEL,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        store: Optional[ChunkStore] = None,
        read_file: Optional[FileReader] = None,
        max_context_tokens: int = DEFAULT_CONTEXT_TOKENS,
    ):
        self.generate = generate
        self.cache = cache
        self.model = model
        self.system_prompt = system_prompt
        self.store = store
        self.read_file = read_file
        self.max_context_tokens = max_context_tokens

    def context_budget(self, chunk: Chunk) -> int:
        if self.store is not None and chunk.pipeline_id:
            pipeline = self.store.get_pipeline(chunk.pipeline_id)
            if pipeline is not None:
                return pipeline.config.max_context_tokens
        return self.max_context_tokens

    def build_messages(self, chunk: Chunk, max_context_tokens: Optional[int] = None) -> list[Message]:
        """Conversation for a chunk: shared context first, the chunk's task last."""
        task = chunk.prompt or chunk.description or chunk.title
        if chunk.target_files:
            task += "\n\nTarget files: " + ", ".join(chunk.target_files)

        if max_context_tokens is None:
            max_context_tokens = self.max_context_tokens
        remaining = max_context_tokens - estimate_tokens(self.system_prompt) - estimate_tokens(task)

        messages: list[Message] = []
        if chunk.context_files:
            sections = []
            omitted = []
            for path in chunk.context_files:
                content = self.read_file(path) if self.read_file else None
                if content is None:
                    sections.append(f"File: {path}")
                    continue

                section = f"File: {path}\n```\n{content}\n```"
                cost = estimate_tokens(section)
                if cost > remaining:
                    sections.append(f"File: {path} (omitted, over context budget)")
                    omitted.append(path)
                    continue
                sections.append(section)
                remaining -= cost

            if omitted:
                logger.info(
                    f"Chunk {chunk.id}: {len(omitted)} context files over the "
                    f"{max_context_tokens:,} token budget: {omitted}"
                )
            messages.append(Message(role="user", content="Project context:\n\n" + "\n\n".join(sections)))
            messages.append(Message(role="assistant", content=CONTEXT_ACK))

        messages.append(Message(role="user", content=task))
        return messages

    def __call__(self, chunk: Chunk) -> ChunkExecutionResult:
        messages = self.build_messages(chunk, self.context_budget(chunk))

        hit = self.cache.find_cache_hit(chunk.project_id, self.system_prompt, messages, self.model)
        if hit.hit:
            logger.info(
                f"Chunk {chunk.id}: reusing {hit.reusable_tokens} cached context tokens"
            )

        try:
            output = self.generate(self.system_prompt, messages, self.model)
        except Exception as e:
            logger.error(f"Chunk {chunk.id} ({chunk.title}) generation failed: {e}")
            return ChunkExecutionResult(success=False, errors=[str(e) or type(e).__name__])

        self.cache.store_context(
            chunk.project_id,
            self.system_prompt,
            messages,
            self.model,
            task_type=chunk.type.value,
        )

        tokens_used = output.input_tokens + output.output_tokens
        if self.store is not None:
            self.store.set_chunk_output(chunk.id, output.text, tokens_used or None)

        return ChunkExecutionResult(
            success=True,
            files_created=list(chunk.target_files),
            tokens_used=tokens_used,
            lines_generated=len(output.text.splitlines()),
        )

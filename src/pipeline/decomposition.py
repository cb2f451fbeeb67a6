"""Keyword-driven decomposition of a generation prompt into a chunk DAG.

The prompt is scanned for feature keywords. Architecture, core components,
styling, and documentation chunks are always produced; schema, auth, API,
dashboard, realtime, and test chunks only when their keywords appear.

Dependencies are expressed with chunk keys ("schema", "components"), which
PipelineScheduler.create_pipeline() resolves to real chunk ids.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from src.llm.tokens import estimate_tokens
from src.pipeline.schemas import ChunkCreateInput, ChunkType, TaskDecomposition

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChunkRule:
    """Template for one decomposed chunk."""

    key: str
    type: ChunkType
    title: str
    description: str
    instructions: str
    target_files: tuple[str, ...]
    priority: int
    keywords: tuple[str, ...] = ()
    depends_on: tuple[str, ...] = field(default_factory=tuple)


# Order matters: it is the suggested execution order.
CHUNK_RULES: list[ChunkRule] = [
    ChunkRule(
        key="architecture",
        type=ChunkType.ARCHITECTURE,
        title="Project Architecture",
        description="Define folder structure, dependencies, and core configuration",
        instructions="Lay out the folder structure, package dependencies, compiler config, and shared utilities.",
        target_files=("package.json", "tsconfig.json", "src/index.ts", "src/types.ts"),
        priority=100,
    ),
    ChunkRule(
        key="schema",
        type=ChunkType.SCHEMA,
        title="Database Schema",
        description="Design and implement database tables and relationships",
        instructions="Define the tables with typed columns, relations, and indexes.",
        target_files=("src/db/schema.ts", "src/db/index.ts"),
        priority=90,
        keywords=("database", "storage", "persist", "sql"),
    ),
    ChunkRule(
        key="auth",
        type=ChunkType.API,
        title="Authentication System",
        description="Implement user authentication and session management",
        instructions="Add login and registration endpoints, session handling, and auth middleware.",
        target_files=("src/auth/index.ts", "src/middleware/auth.ts"),
        priority=85,
        keywords=("auth", "login", "user", "account"),
        depends_on=("schema",),
    ),
    ChunkRule(
        key="api",
        type=ChunkType.API,
        title="API Endpoints",
        description="Create REST/GraphQL API endpoints",
        instructions="Implement CRUD operations with input validation and error handling.",
        target_files=("src/routes/index.ts",),
        priority=80,
        keywords=("api", "endpoint", "rest", "graphql"),
        depends_on=("schema",),
    ),
    ChunkRule(
        key="components",
        type=ChunkType.COMPONENT,
        title="Core UI Components",
        description="Build reusable UI components",
        instructions="Build responsive, reusable UI components.",
        target_files=("src/components/",),
        priority=70,
    ),
    ChunkRule(
        key="dashboard",
        type=ChunkType.COMPONENT,
        title="Dashboard Pages",
        description="Create dashboard views and charts",
        instructions="Build data visualizations and admin views.",
        target_files=("src/pages/dashboard/",),
        priority=65,
        keywords=("dashboard", "admin", "analytics"),
        depends_on=("components",),
    ),
    ChunkRule(
        key="realtime",
        type=ChunkType.INTEGRATION,
        title="Real-time Features",
        description="Implement WebSocket/SSE for real-time updates",
        instructions="Push live updates to clients over WebSocket or SSE.",
        target_files=("src/socket/index.ts", "src/hooks/useRealtime.ts"),
        priority=55,
        keywords=("chat", "message", "real-time"),
    ),
    ChunkRule(
        key="styling",
        type=ChunkType.STYLING,
        title="Styling & Theming",
        description="Apply consistent styling and dark mode",
        instructions="Apply a consistent theme with dark mode and responsive layouts.",
        target_files=("src/styles/", "tailwind.config.ts"),
        priority=50,
    ),
    ChunkRule(
        key="tests",
        type=ChunkType.TESTING,
        title="Test Suite",
        description="Write unit and integration tests",
        instructions="Cover components and API endpoints with unit and integration tests.",
        target_files=("src/__tests__/",),
        priority=40,
        keywords=("test", "tdd"),
    ),
    ChunkRule(
        key="docs",
        type=ChunkType.DOCUMENTATION,
        title="Documentation",
        description="Write README and API documentation",
        instructions="Write a README with setup instructions and API reference docs.",
        target_files=("README.md", "docs/"),
        priority=30,
    ),
]


def _matches(rule: ChunkRule, text: str) -> bool:
    return not rule.keywords or any(word in text for word in rule.keywords)


def _build_prompt(rule: ChunkRule, prompt: str, project_type: str) -> str:
    return f"{rule.title} for this {project_type} project: {prompt}\n\n{rule.instructions}"


def decompose_prompt(
    prompt: str,
    project_type: str = "web",
    rules: Optional[list[ChunkRule]] = None,
) -> TaskDecomposition:
    """Split a prompt into chunk inputs using keyword rules.

    A dependency is kept only when the chunk it names was also produced.
    """
    text = prompt.lower()
    selected = [rule for rule in (rules or CHUNK_RULES) if _matches(rule, text)]
    selected_keys = {rule.key for rule in selected}

    chunks = [
        ChunkCreateInput(
            key=rule.key,
            type=rule.type,
            title=rule.title,
            description=rule.description,
            prompt=_build_prompt(rule, prompt, project_type),
            target_files=list(rule.target_files),
            dependencies=[dep for dep in rule.depends_on if dep in selected_keys],
            priority=rule.priority,
        )
        for rule in selected
    ]

    decomposition = TaskDecomposition(
        chunks=chunks,
        estimated_total_tokens=sum(estimate_tokens(c.prompt) for c in chunks),
        suggested_order=[c.key for c in chunks],
        parallel_groups=_group_by_priority(chunks),
    )
    logger.info(
        f"Decomposed prompt into {len(chunks)} chunks: {decomposition.suggested_order}"
    )
    return decomposition


def _group_by_priority(chunks: list[ChunkCreateInput]) -> list[list[str]]:
    """Group chunk keys by priority, highest priority first."""
    groups: dict[int, list[str]] = {}
    for chunk in chunks:
        groups.setdefault(chunk.priority or 0, []).append(chunk.key)
    return [groups[p] for p in sorted(groups, reverse=True)]

"""
Rolldeo MCP Server
Exposes the random table engine as FastMCP tools: load collections, browse
their tables and templates, roll them and inspect their probabilities.
"""

import json
import logging
import os
from pathlib import Path
from typing import Annotated

from dotenv import load_dotenv
from fastmcp import FastMCP
from pydantic import Field

from .config import EngineConfig
from .engine import RandomTableEngine
from .engine.trace import format_trace, trace_stats
from .exceptions import RolldeoError
from .models import RollResult

logger = logging.getLogger("rolldeo")

logging.basicConfig(
    level=logging.INFO,
    )

if not load_dotenv():
    logger.debug("No .env file found, using environment variables only")

COLLECTION_SUFFIXES = (".json", ".yaml", ".yml")


def load_collections_dir(engine: RandomTableEngine, directory: Path) -> int:
    """Load every collection file in ``directory`` as preloaded and bind imports.

    Unreadable and invalid files are logged and skipped.

    Returns:
        Number of collections loaded
    """
    loaded = 0
    for path in sorted(directory.iterdir()):
        if path.suffix.lower() not in COLLECTION_SUFFIXES:
            continue
        try:
            report = engine.load_file(path, is_preloaded=True)
        except (OSError, UnicodeDecodeError) as e:
            logger.error(f"❌ Could not read {path.name}: {e}")
            continue
        if report.valid:
            loaded += 1
        else:
            logger.warning(f"❌ Skipped {path.name}:\n{report}")
    engine.resolve_imports()
    return loaded


engine = RandomTableEngine(EngineConfig.from_env())
logger.debug("✅ Engine initialized")

collections_dir = os.getenv("ROLLDEO_COLLECTIONS_DIR")
if collections_dir:
    collections_path = Path(collections_dir).resolve()
    if collections_path.is_dir():
        count = load_collections_dir(engine, collections_path)
        logger.info(f"📚 Loaded {count} collections from {collections_path}")
    else:
        logger.warning(f"❌ ROLLDEO_COLLECTIONS_DIR is not a directory: {collections_path}")

mcp = FastMCP(
    name="rolldeo"
)


# ----------------------------------------------------------------------
# Formatting helpers
# ----------------------------------------------------------------------

def _format_roll(result: RollResult, show_trace: bool = False) -> str:
    lines = [f"🎲 **{result.value}**"]
    if result.result_type:
        lines.append(f"Type: {result.result_type}")
    described = [d for d in result.descriptions if d.description]
    if described:
        lines.append("")
        for description in described:
            lines.append(f"- {description.table_name}: {description.description}")
    if show_trace and result.trace is not None:
        stats = trace_stats(result.trace)
        lines.append("")
        lines.append(f"Trace ({stats['node_count']} nodes, depth {stats['max_depth']}):")
        lines.append(format_trace(result.trace))
    return "\n".join(lines)


# ----------------------------------------------------------------------
# Tool logic
# ----------------------------------------------------------------------

def _load_collection_logic(
    engine: RandomTableEngine, content: str, fmt: str = "json", collection_id: str | None = None
) -> str:
    if fmt == "yaml":
        report = engine.load_from_yaml(content, collection_id)
    else:
        report = engine.load_from_json(content, collection_id)
    if not report.valid:
        return f"Error: collection not loaded.\n{report}"

    engine.resolve_imports()
    tables = engine.list_tables(report.collection_id, include_hidden=True)
    message = f"Loaded collection '{report.collection_id}' ({len(tables)} tables)"
    if report.warnings:
        message += f"\n{report}"
    return message


def _list_collections_logic(engine: RandomTableEngine) -> str:
    collections = engine.list_collections()
    if not collections:
        return "No collections loaded."
    lines = ["**Loaded collections:**"]
    for info in collections:
        namespace = f" [{info.namespace}]" if info.namespace else ""
        lines.append(
            f"- `{info.id}` {info.name}{namespace}: "
            f"{info.table_count} tables, {info.template_count} templates"
        )
    return "\n".join(lines)


def _list_tables_logic(engine: RandomTableEngine, collection_id: str, include_hidden: bool = False) -> str:
    try:
        tables = engine.list_tables(collection_id, include_hidden=include_hidden)
    except RolldeoError as e:
        return f"Error: {e.message}"
    if not tables:
        return f"No tables in '{collection_id}'."
    lines = [f"**Tables in {collection_id}:**"]
    for info in tables:
        lines.append(f"- `{info.id}` {info.name} ({info.type}, {info.entry_count} entries)")
    return "\n".join(lines)


def _list_templates_logic(engine: RandomTableEngine, collection_id: str) -> str:
    try:
        templates = engine.list_templates(collection_id)
    except RolldeoError as e:
        return f"Error: {e.message}"
    if not templates:
        return f"No templates in '{collection_id}'."
    lines = [f"**Templates in {collection_id}:**"]
    for info in templates:
        lines.append(f"- `{info.id}` {info.name}")
    return "\n".join(lines)


def _roll_table_logic(
    engine: RandomTableEngine,
    collection_id: str,
    table_id: str,
    count: int = 1,
    trace: bool = False,
    seed: int | None = None,
) -> str:
    results = []
    try:
        for index in range(count):
            call_seed = None if seed is None else seed + index
            result = engine.roll_table(table_id, collection_id, trace=trace, seed=call_seed)
            results.append(_format_roll(result, trace))
    except RolldeoError as e:
        return f"Error: {e.message}"
    return "\n\n".join(results)


def _roll_template_logic(
    engine: RandomTableEngine,
    collection_id: str,
    template_id: str,
    trace: bool = False,
    seed: int | None = None,
) -> str:
    try:
        result = engine.roll_template(template_id, collection_id, trace=trace, seed=seed)
    except RolldeoError as e:
        return f"Error: {e.message}"
    return _format_roll(result, trace)


def _evaluate_pattern_logic(
    engine: RandomTableEngine,
    collection_id: str,
    pattern: str,
    trace: bool = False,
    seed: int | None = None,
) -> str:
    try:
        result = engine.evaluate_pattern(pattern, collection_id, trace=trace, seed=seed)
    except RolldeoError as e:
        return f"Error: {e.message}"
    return _format_roll(result, trace)


def _table_stats_logic(engine: RandomTableEngine, collection_id: str, table_id: str) -> str:
    try:
        visualization = engine.visualize_table(table_id, collection_id)
    except RolldeoError as e:
        return f"Error: {e.message}"
    return json.dumps(visualization.model_dump(by_alias=True), indent=2)


def _validate_collection_logic(engine: RandomTableEngine, content: str, fmt: str = "json") -> str:
    # Validate against a scratch engine so nothing is registered
    scratch = RandomTableEngine(engine.config)
    if fmt == "yaml":
        report = scratch.load_from_yaml(content)
    else:
        report = scratch.load_from_json(content)
    return str(report)


# ----------------------------------------------------------------------
# Tools
# ----------------------------------------------------------------------

@mcp.tool
def load_collection(
    content: Annotated[str, Field(description="Collection document as JSON or YAML text")],
    format: Annotated[str, Field(description="Document format: 'json' or 'yaml'")] = "json",
    collection_id: Annotated[str | None, Field(description="Id to register the collection under (defaults to namespace or name)")] = None,
) -> str:
    """Load a random table collection into the engine."""
    return _load_collection_logic(engine, content, format.lower(), collection_id)


@mcp.tool
def list_collections() -> str:
    """List the loaded collections."""
    return _list_collections_logic(engine)


@mcp.tool
def list_tables(
    collection_id: Annotated[str, Field(description="Collection id")],
    include_hidden: Annotated[bool, Field(description="Include hidden helper tables")] = False,
) -> str:
    """List the tables of a collection."""
    return _list_tables_logic(engine, collection_id, include_hidden)


@mcp.tool
def list_templates(
    collection_id: Annotated[str, Field(description="Collection id")],
) -> str:
    """List the templates of a collection."""
    return _list_templates_logic(engine, collection_id)


@mcp.tool
def roll_table(
    collection_id: Annotated[str, Field(description="Collection id")],
    table_id: Annotated[str, Field(description="Table id (may be alias- or namespace-qualified)")],
    count: Annotated[int, Field(description="Number of independent rolls", ge=1, le=100)] = 1,
    trace: Annotated[bool, Field(description="Show how the result was resolved")] = False,
    seed: Annotated[int | None, Field(description="Seed for a reproducible roll")] = None,
) -> str:
    """Roll a table and expand the result."""
    return _roll_table_logic(engine, collection_id, table_id, count, trace, seed)


@mcp.tool
def roll_template(
    collection_id: Annotated[str, Field(description="Collection id")],
    template_id: Annotated[str, Field(description="Template id")],
    trace: Annotated[bool, Field(description="Show how the result was resolved")] = False,
    seed: Annotated[int | None, Field(description="Seed for a reproducible roll")] = None,
) -> str:
    """Generate text from a template."""
    return _roll_template_logic(engine, collection_id, template_id, trace, seed)


@mcp.tool
def evaluate_pattern(
    collection_id: Annotated[str, Field(description="Collection the pattern's references resolve against")],
    pattern: Annotated[str, Field(description="Text with {{...}} expressions, e.g. 'A {{weapon}} worth {{dice:2d6*10}} gp'")],
    trace: Annotated[bool, Field(description="Show how the result was resolved")] = False,
    seed: Annotated[int | None, Field(description="Seed for a reproducible roll")] = None,
) -> str:
    """Evaluate an ad-hoc pattern against a collection."""
    return _evaluate_pattern_logic(engine, collection_id, pattern, trace, seed)


@mcp.tool
def table_stats(
    collection_id: Annotated[str, Field(description="Collection id")],
    table_id: Annotated[str, Field(description="Table id")],
) -> str:
    """Show the probability distribution and inheritance chain of a table."""
    return _table_stats_logic(engine, collection_id, table_id)


@mcp.tool
def validate_collection(
    content: Annotated[str, Field(description="Collection document as JSON or YAML text")],
    format: Annotated[str, Field(description="Document format: 'json' or 'yaml'")] = "json",
) -> str:
    """Check a collection document for errors without loading it."""
    return _validate_collection_logic(engine, content, format.lower())


logger.debug("✅ All tools successfully registered. Rolldeo server running! 🎲")

def main() -> None:
    """Main entry point for the Rolldeo MCP Server."""
    mcp.run()

if __name__ == "__main__":
    main()

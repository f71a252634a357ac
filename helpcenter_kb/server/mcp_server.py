# helpcenter-kb MCP Server
# Exposes knowledge base search to MCP clients over stdio

import logging
from typing import Any, Dict, List, Optional

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from helpcenter_kb import __version__
from helpcenter_kb.config.paths import get_paths
from helpcenter_kb.config.settings import AppConfig
from helpcenter_kb.errors import KnowledgeBaseError, format_error
from helpcenter_kb.indexer.embeddings import OllamaEmbedder
from helpcenter_kb.indexer.search import MAX_LIMIT, SearchEngine, format_results_markdown
from helpcenter_kb.indexer.store import KnowledgeBaseStore
from helpcenter_kb.sources.registry import SourceRegistry

logger = logging.getLogger(__name__)

SERVER_NAME = "helpcenter-kb"

SEARCH_TOOL = Tool(
    name="search_knowledge_base",
    description=(
        "Search the knowledge base for documentation, guides, and help articles. "
        "Returns relevant excerpts with source links."
    ),
    inputSchema={
        "type": "object",
        "properties": {
            "query": {
                "type": "string",
                "description": "Natural language search query",
            },
            "sources": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Filter by source IDs (optional, searches all if omitted)",
            },
            "limit": {
                "type": "integer",
                "description": "Maximum results to return",
                "default": 5,
                "minimum": 1,
                "maximum": MAX_LIMIT,
            },
        },
        "required": ["query"],
    },
)

LIST_SOURCES_TOOL = Tool(
    name="list_sources",
    description="List all configured knowledge base sources and their sync status",
    inputSchema={"type": "object", "properties": {}},
)


class KnowledgeBaseMCPServer:
    """MCP server backed by one store and one embedder for its whole lifetime."""

    def __init__(self, config: AppConfig,
                 store: Optional[KnowledgeBaseStore] = None,
                 embedder: Optional[OllamaEmbedder] = None,
                 db_path: Optional[str] = None):
        self.config = config
        self.registry = SourceRegistry(config)
        self.store = store or KnowledgeBaseStore(
            db_path or str(get_paths().database), dimension=config.ollama.dimension
        )
        self.embedder = embedder or OllamaEmbedder(
            config.ollama, concurrency=config.sync.embedding_concurrency
        )
        self.engine = SearchEngine(self.store, self.embedder)
        self.server = Server(SERVER_NAME, version=__version__)
        self._setup_handlers()

    def _setup_handlers(self):
        @self.server.list_tools()
        async def list_tools() -> List[Tool]:
            return [SEARCH_TOOL, LIST_SOURCES_TOOL]

        @self.server.call_tool()
        async def call_tool(name: str, arguments: Optional[dict]) -> List[TextContent]:
            text = await self.handle_tool(name, arguments or {})
            return [TextContent(type="text", text=text)]

    async def handle_tool(self, name: str, arguments: Dict[str, Any]) -> str:
        """Run a tool and return its text; failures come back as error text."""
        try:
            if name == SEARCH_TOOL.name:
                return await self.search(arguments)
            if name == LIST_SOURCES_TOOL.name:
                return await self.list_sources()
            return f"Error: Unknown tool: {name}"
        except KnowledgeBaseError as e:
            logger.error(f"Tool {name} failed: {format_error(e)}")
            return f"Error: {format_error(e)}"

    async def search(self, arguments: Dict[str, Any]) -> str:
        query = arguments.get("query")
        if not isinstance(query, str) or not query.strip():
            return "Error: Query parameter is required and must be a non-empty string"

        sources = arguments.get("sources") or None
        if sources is not None and (not isinstance(sources, list)
                                    or not all(isinstance(s, str) for s in sources)):
            return "Error: sources must be a list of source IDs"

        limit = arguments.get("limit", 5)
        if not isinstance(limit, (int, float)) or isinstance(limit, bool):
            return "Error: limit must be a number"

        results = await self.engine.search(query, limit=int(limit), sources=sources, deduplicate=True)
        return format_results_markdown(results, query=query)

    async def list_sources(self) -> str:
        stats = {s.source.id: s for s in await self.store.get_sources_with_stats()}
        sources = self.registry.all()
        if not sources:
            return "No sources configured. Add one with 'kb sources add'."

        blocks = []
        for source in sources:
            stat = stats.get(source.id)
            last_synced = "Never"
            if stat and stat.source.last_synced_at:
                last_synced = stat.source.last_synced_at.strftime("%Y-%m-%d %H:%M:%S UTC")
            blocks.append("\n".join([
                f"**{source.name}** ({source.id})",
                f"  Status: {'Enabled' if source.enabled else 'Disabled'}",
                f"  URL: {source.base_url}",
                f"  Locale: {source.locale}",
                f"  Articles: {stat.article_count if stat else 0}",
                f"  Chunks: {stat.chunk_count if stat else 0}",
                f"  Last Synced: {last_synced}",
            ]))
        return "\n\n".join(blocks) + "\n"

    async def run_stdio(self):
        """Serve over stdin/stdout until the client disconnects."""
        await self.store.initialize()
        await self.registry.register_all(self.store)
        try:
            logger.info(f"Starting {SERVER_NAME} MCP server ({len(self.registry)} sources)")
            async with stdio_server() as (read_stream, write_stream):
                await self.server.run(
                    read_stream,
                    write_stream,
                    self.server.create_initialization_options(),
                )
        finally:
            await self.embedder.close()
            await self.store.close()
            logger.info("MCP server stopped")

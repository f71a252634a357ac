"""MCP server for helpcenter-kb."""

from .mcp_server import KnowledgeBaseMCPServer

__all__ = ['KnowledgeBaseMCPServer']

"""MCP tool providers: descriptors, transports, per-request lifecycle and the merged tool registry."""

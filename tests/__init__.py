"""
MCP Tool Selector Test Suite

Covers ranking, caching, parameter validation and recovery with a scripted
oracle, plus the HTTP surface through FastAPI's TestClient. Nothing here
needs network access or an embedding model.
"""

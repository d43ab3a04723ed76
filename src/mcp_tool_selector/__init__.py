# Tool selection and parameter validation pipeline
# Main module initialization

__version__ = "0.1.0"


def main() -> None:
    """CLI entry point for the application."""
    import uvicorn

    from .config import get_config

    settings = get_config()
    uvicorn.run("mcp_tool_selector.main:app", host=settings.host, port=settings.port, reload=False)

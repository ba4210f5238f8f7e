from testgen.logger import get_logger

logger = get_logger()


def main() -> None:
    host = "0.0.0.0"
    port = 8000
    display_url = f"http://localhost:{port}"

    logger.info(
        "Starting PR Unit Test Generator API on {display_url} (binding to {host}:{port})",
        display_url=display_url,
        host=host,
        port=port,
    )

    import uvicorn

    # A single worker process: the event queue lives in memory.
    uvicorn.run(
        app="testgen.main:app",
        host=host,
        port=port,
        reload=False,
        workers=1,
        log_level="info",
    )


if __name__ == "__main__":
    main()

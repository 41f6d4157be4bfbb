from throttle.core.app_factory import create_app

app = create_app()


if __name__ == "__main__":
    import uvicorn

    # Single worker: limiter state is per process.
    uvicorn.run("throttle.main:app", host="0.0.0.0", port=8000, workers=1)

from gymshop.api.main import app

if __name__ == "__main__":
    import logging
    import os

    import uvicorn

    logging.basicConfig(level=os.getenv("GYMSHOP_LOG_LEVEL", "INFO").upper())
    host = os.getenv("GYMSHOP_HOST", "0.0.0.0")
    port = int(os.getenv("GYMSHOP_PORT", "8001"))
    uvicorn.run(app, host=host, port=port)

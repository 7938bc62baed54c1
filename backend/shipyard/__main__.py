"""Run the Shipyard API: python -m shipyard"""
import os

import uvicorn


def main():
    uvicorn.run(
        "shipyard.main:app",
        host=os.getenv("SHIPYARD_HOST", "0.0.0.0"),
        port=int(os.getenv("SHIPYARD_PORT", "8000")),
    )


if __name__ == "__main__":
    main()

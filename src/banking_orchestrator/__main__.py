import os

import uvicorn


def main() -> None:
    host = os.getenv("ORCHESTRATOR_HOST", "0.0.0.0")
    port = int(os.getenv("ORCHESTRATOR_PORT", "8000"))
    uvicorn.run("banking_orchestrator.app:app", host=host, port=port, reload=False)


if __name__ == "__main__":
    main()

from __future__ import annotations

import uvicorn

from hookrelay.apps.receiver import create_app, load_receiver_settings
from hookrelay.core.logging import configure_logging


def main() -> None:
    # Run the reference receiver with env-driven settings for local signature and retry checks.
    configure_logging()
    settings = load_receiver_settings()
    app = create_app(settings=settings)
    uvicorn.run(app, host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    main()

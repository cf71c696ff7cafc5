"""Entry point: python -m voice_signaling"""

import uvicorn
from .config import settings


def main():
    """Run the server."""
    uvicorn.run(
        "voice_signaling.server:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        reload=settings.debug,
        http="h11",
        timeout_keep_alive=5,
    )


if __name__ == "__main__":
    main()

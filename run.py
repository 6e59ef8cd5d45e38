import os

import uvicorn
from gateaway.logging_utility import logger


if __name__=='__main__':
    logger.info("Starting GateAway application")
    uvicorn.run(
        "gateaway.main:create_app",
        factory=True,
        host=os.environ.get("GATEAWAY_HOST", "127.0.0.1"),
        port=int(os.environ.get("GATEAWAY_PORT", "8000")),
    )

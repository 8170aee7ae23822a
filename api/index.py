import logging
import os
import sys

from mangum import Mangum

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from bot import create_bot
from bot.router import InboundEvent
from wallet.api import create_app
from wallet.config import Settings
from wallet.models import Screen

logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    level=os.getenv("LOG_LEVEL", "INFO"),
)

settings = Settings.from_env()
router = create_bot(settings)
app = create_app(router.profiles.gate, settings)


@app.post("/events", response_model=Screen, tags=["Bot"])
async def handle_event(event: InboundEvent) -> Screen:
    return await router.handle(event)


handler = Mangum(app)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))

# ============================
# EVENTLET MONKEY PATCH (MUST BE FIRST)
# ============================
import eventlet
eventlet.monkey_patch()

import os

from app import create_app, socketio
from config import Config


class ServerConfig(Config):
    SOCKETIO_ASYNC_MODE = "eventlet"


app = create_app(ServerConfig)

if __name__ == "__main__":
    app.logger.info("BloodLink server starting...")
    socketio.run(app, host="0.0.0.0", port=int(os.getenv("PORT", 5000)))

from __future__ import annotations

import os

from ..env import get_env
from . import create_app

app = create_app()

if __name__ == "__main__":
    port = get_env("PORT") or os.environ.get("PORT", "5001")
    app.run(
        host=get_env("HOST", "0.0.0.0"),
        port=int(port),
        debug=bool(os.environ.get("FLASK_DEBUG")),
    )

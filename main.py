from __future__ import annotations
from llm_gateway.app import create_app
from llm_gateway.config import Settings

settings = Settings()
app = create_app(settings)  # uvicorn will import this

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=settings.PORT)

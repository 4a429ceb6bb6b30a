"""Run the API with uvicorn: python -m quicksend"""
import uvicorn

from quicksend.config import settings

if __name__ == "__main__":
    uvicorn.run("quicksend.main:app", host="0.0.0.0", port=settings.API_PORT)

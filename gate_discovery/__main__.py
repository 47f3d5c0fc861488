# =======================================================================================
# gate_discovery/__main__.py - Server Entry Point (python -m gate_discovery)
# =======================================================================================
import uvicorn
from .config import config

if __name__ == "__main__":
    uvicorn.run("gate_discovery.main:app", host=config.API_HOST, port=config.API_PORT, reload=config.API_DEBUG)

# app.py  -- GreenBlocks API server
# Run:
#   pip install -e .
#   export MONGODB_URI="mongodb://localhost:27017"
#   export DB_NAME="greenblocks"
#   python app.py
#
# Chain (issuance and purchases):
#   export WEB3_RPC_URL="https://sepolia.infura.io/v3/<KEY>"
#   export TOKEN_CONTRACT_ADDRESS="0x..."   # ERC-20 carbon credit token
#   export REGULATOR_PRIVATE_KEY="0x..."
#   export ESCROW_PRIVATE_KEY="0x..."       # optional, defaults to the regulator key
#
# API base: http://127.0.0.1:5000/api/v1
import os

from greenblocks.api import create_app
from greenblocks.config import Settings, configure_logging
from greenblocks.services import build_services

settings = Settings.from_env()
configure_logging(settings.log_level)
app = create_app(build_services(settings))

if __name__ == "__main__":
    app.run(host=os.getenv("HOST", "127.0.0.1"), port=int(os.getenv("PORT", "5000")),
            debug=os.getenv("FLASK_DEBUG") == "1")

from mangum import Mangum
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ledger.api import create_app
from ledger.config import load_settings
from ledger.log_config import configure_json_logging

settings = load_settings()
configure_json_logging(settings.log_level, json_lines=settings.log_json)

app = create_app(settings)
app.root_path = "/api"

handler = Mangum(app)

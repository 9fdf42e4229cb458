# apps/api/main.py
from apps.api.app_factory import create_app
from apps.common.logging_config import configure_logging
from apps.common.settings import load_settings
from services.ingestion.storage import LocalStorage

configure_logging()
SETTINGS = load_settings()

app = create_app(storage=LocalStorage(root_dir=str(SETTINGS.storage_root)), api_token=SETTINGS.api_token)

"""Process entrypoint for the order service (`uvicorn orderflow.services.orders.main:app`)."""

from orderflow.common.config import settings
from orderflow.common.logging import configure_logging
from orderflow.common.startup import log_startup_config
from orderflow.common.tracing import instrument_app, setup_tracing
from orderflow.services.orders.api import create_app

configure_logging()
if settings.tracing_enabled:
    setup_tracing(settings)
log_startup_config(settings)
app = create_app(settings)
if settings.tracing_enabled:
    instrument_app(app)

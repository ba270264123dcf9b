from django.apps import AppConfig
from django.conf import settings
from django.db import DEFAULT_DB_ALIAS
from django.db.backends.signals import connection_created


def engine_query_logging(sender, connection, **kwargs):
    """Log every statement on new connections while KV_ENGINE_LOG is on."""
    if settings.KV_ENGINE_LOG:
        connection.force_debug_cursor = True


class StorageConfig(AppConfig):
    """Owns the process-wide storage engine handle."""

    name = "storage"
    default_auto_field = "django.db.models.BigAutoField"
    engine = None

    def ready(self):
        from storage.engine import StorageEngine

        self.engine = StorageEngine(settings.KV_DB_PATH, using=DEFAULT_DB_ALIAS)
        # SQLite cannot create its file inside a missing directory.
        self.engine.ensure_directory()

        connection_created.connect(engine_query_logging, dispatch_uid="storage.engine_log")

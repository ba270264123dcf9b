import logging

from django.apps import apps
from django.template.loader import get_template

from storage.engine import StorageEngine
from storage.views import IndexView

logger = logging.getLogger(__name__)


def prepare() -> StorageEngine:
    """
    Open the storage engine and load the index page template.

    Both must succeed before the process serves any request.

    Raises:
        StorageError: If the engine cannot be opened.
        TemplateDoesNotExist, TemplateSyntaxError: If the page cannot be loaded.
    """
    engine = apps.get_app_config("storage").engine
    engine.open()
    get_template(IndexView.template_name)
    logger.info(f"Storage ready at {engine.path}")
    return engine

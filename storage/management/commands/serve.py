import logging

from django.conf import settings
from django.core.management import call_command
from django.core.management.base import BaseCommand, CommandError
from django.template import TemplateDoesNotExist, TemplateSyntaxError

from storage import startup
from storage.exceptions import StorageError

logger = logging.getLogger("storage.serve")


class Command(BaseCommand):
    help = "Open the storage engine, load the index page and serve HTTP on PORT."

    def add_arguments(self, parser):
        parser.add_argument("--port", default=settings.PORT, help="Port to listen on (default: $PORT or 8080)")
        parser.add_argument("--host", default="0.0.0.0", help="Interface to bind (default: 0.0.0.0)")

    def handle(self, *args, **options):
        try:
            startup.prepare()
        except StorageError as exc:
            raise CommandError(f"Failed to open database: {exc.detail}") from exc
        except (TemplateDoesNotExist, TemplateSyntaxError) as exc:
            raise CommandError(f"Failed to parse templates: {exc}") from exc

        port = options["port"]
        logger.info(f"Server starting on http://localhost:{port}")
        call_command(
            "runserver",
            f"{options['host']}:{port}",
            use_reloader=False,
            skip_checks=True,
        )

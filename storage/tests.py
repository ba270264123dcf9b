import importlib
import os
import sys
import tempfile
import threading
from datetime import timedelta
from unittest import mock

from django.conf import settings
from django.core.management import call_command
from django.core.management.base import CommandError
from django.db import DatabaseError, connections
from django.db.backends.signals import connection_created
from django.test import SimpleTestCase, TestCase, TransactionTestCase, override_settings
from django.urls import reverse
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APIRequestFactory, APITestCase

from storage import startup
from storage.apps import engine_query_logging
from storage.engine import StorageEngine
from storage.exceptions import KeyNotFound, StorageError
from storage.models import KeyValueEntry
from storage.records import EPOCH, to_record, version_to_datetime
from storage.services import (
    create_record,
    delete_record,
    get_record,
    get_stats,
    list_records,
    search_records,
    update_record,
)
from storage.views import IndexView, KeyListView, StatsView, parse_limit


def detail_url(key):
    return reverse("storage:key-detail", args=[key])


class KeyValueApiTests(APITestCase):
    def setUp(self):
        self.list_url = reverse("storage:key-list")

    def test_create_and_read_key(self):
        response = self.client.post(self.list_url, {"key": "alpha", "value": "first"}, format="json")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["key"], "alpha")
        self.assertEqual(response.data["value"], "first")
        self.assertEqual(response["Content-Type"], "application/json")

        response = self.client.get(detail_url("alpha"))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["key"], "alpha")
        self.assertEqual(response.data["value"], "first")
        self.assertTrue(response.json()["created_at"].endswith("Z"))

    def test_full_lifecycle(self):
        response = self.client.post(self.list_url, {"key": "x", "value": "1"}, format="json")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["value"], "1")

        self.assertEqual(self.client.get(detail_url("x")).data["value"], "1")

        response = self.client.put(detail_url("x"), {"value": "2"}, format="json")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["key"], "x")
        self.assertEqual(response.data["value"], "2")

        self.assertEqual(self.client.get(detail_url("x")).data["value"], "2")

        response = self.client.delete(detail_url("x"))
        self.assertEqual(response.status_code, status.HTTP_204_NO_CONTENT)
        self.assertEqual(response.content, b"")

        response = self.client.get(detail_url("x"))
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_missing_key_returns_404(self):
        response = self.client.get(detail_url("missing"))
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(response.json(), {"detail": "Key not found"})

    def test_delete_missing_key_returns_404(self):
        response = self.client.delete(detail_url("missing"))
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_create_with_empty_key_is_rejected(self):
        response = self.client.post(self.list_url, {"key": "", "value": "v"}, format="json")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertFalse(KeyValueEntry.objects.exists())

    def test_create_without_key_is_rejected(self):
        response = self.client.post(self.list_url, {"value": "v"}, format="json")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertFalse(KeyValueEntry.objects.exists())

    def test_malformed_json_is_rejected(self):
        response = self.client.post(self.list_url, data="{not json", content_type="application/json")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

        response = self.client.put(detail_url("k"), data="{not json", content_type="application/json")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertFalse(KeyValueEntry.objects.exists())

    def test_empty_body_is_rejected(self):
        response = self.client.post(self.list_url, data="", content_type="application/json")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

        response = self.client.put(detail_url("k"), data="", content_type="application/json")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertFalse(KeyValueEntry.objects.exists())

    def test_nul_characters_are_stored_verbatim(self):
        response = self.client.post(self.list_url, {"key": "k\x001", "value": "a\x00b"}, format="json")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(KeyValueEntry.objects.get(key="k\x001").value, "a\x00b")

        response = self.client.put(detail_url("k"), {"value": "c\x00d"}, format="json")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(self.client.get(detail_url("k")).data["value"], "c\x00d")

    def test_create_overwrites_existing_key(self):
        self.client.post(self.list_url, {"key": "dup", "value": "old"}, format="json")
        response = self.client.post(self.list_url, {"key": "dup", "value": "new"}, format="json")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(KeyValueEntry.objects.get(key="dup").value, "new")
        self.assertEqual(KeyValueEntry.objects.count(), 1)

    def test_update_missing_key_creates_it(self):
        response = self.client.put(detail_url("fresh"), {"value": "v"}, format="json")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(self.client.get(detail_url("fresh")).data["value"], "v")

    def test_list_respects_limit_and_order(self):
        for key in ["a", "b", "c"]:
            self.client.post(self.list_url, {"key": key, "value": key.upper()}, format="json")

        response = self.client.get(self.list_url, {"limit": 2})
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual([item["key"] for item in response.data], ["a", "b"])

    def test_list_with_negative_limit_is_empty(self):
        self.client.post(self.list_url, {"key": "a", "value": "1"}, format="json")
        response = self.client.get(self.list_url, {"limit": -5})
        self.assertEqual(response.data, [])

    def test_list_with_invalid_limit_uses_default(self):
        self.client.post(self.list_url, {"key": "a", "value": "1"}, format="json")
        response = self.client.get(self.list_url, {"limit": "lots"})
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(len(response.data), 1)

    def test_list_empty_store(self):
        response = self.client.get(self.list_url)
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.json(), [])

    def test_search_is_case_insensitive(self):
        for key in ["user:1", "admin:2", "user:2"]:
            self.client.post(self.list_url, {"key": key, "value": "v"}, format="json")

        response = self.client.get(reverse("storage:search"), {"q": "USE"})
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual([item["key"] for item in response.data], ["user:1", "user:2"])

    def test_search_requires_query(self):
        response = self.client.get(reverse("storage:search"))
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

        response = self.client.get(reverse("storage:search"), {"q": ""})
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_stats_counts_keys(self):
        for key in ["a", "b", "c"]:
            self.client.post(self.list_url, {"key": key, "value": "x" * 1000}, format="json")
        self.client.post(self.list_url, {"key": "a", "value": "y"}, format="json")

        response = self.client.get(reverse("storage:stats"))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["num_keys"], 3)
        self.assertGreaterEqual(response.data["database_size"], 0)

    def test_database_error_is_reported_as_json_500(self):
        with mock.patch("storage.views.list_records", side_effect=DatabaseError("database is locked")):
            with self.assertLogs("storage.exceptions", "ERROR"):
                response = self.client.get(self.list_url)
        self.assertEqual(response.status_code, status.HTTP_500_INTERNAL_SERVER_ERROR)
        self.assertEqual(response.json(), {"detail": "database is locked"})


class PresentationTests(TestCase):
    def test_index_page_renders(self):
        response = self.client.get("/")
        self.assertEqual(response.status_code, 200)
        self.assertContains(response, "Key-Value Store")
        self.assertContains(response, "/static/app.js")

    def test_static_assets_are_served(self):
        response = self.client.get("/static/app.js")
        self.assertEqual(response.status_code, 200)
        self.assertIn(b"/api/keys", b"".join(response.streaming_content))

    def test_schema_is_served(self):
        response = self.client.get(reverse("schema"))
        self.assertEqual(response.status_code, 200)


class InjectedEngineTests(TestCase):
    factory = APIRequestFactory()

    def test_view_uses_injected_engine(self):
        engine = mock.Mock()
        engine.read_transaction.return_value = []
        view = KeyListView.as_view(engine=engine)

        response = view(self.factory.get("/api/keys"))

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data, [])
        engine.read_transaction.assert_called_once()

    def test_storage_error_becomes_500(self):
        engine = mock.Mock()
        engine.read_transaction.side_effect = StorageError("disk on fire")
        view = StatsView.as_view(engine=engine)

        with self.assertLogs("storage.exceptions", "ERROR"):
            response = view(self.factory.get("/api/stats"))

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.data, {"detail": "disk on fire"})


class EngineTestCase(TransactionTestCase):
    """Runs against a real engine file in a fresh temporary directory."""

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.engine = StorageEngine(self.tmp.name).open()
        self.addCleanup(self.engine.close)

    def entries(self):
        return KeyValueEntry.objects.using(self.engine.using)


class StorageEngineTests(EngineTestCase):
    def test_data_lives_under_engine_path(self):
        self.engine.write_transaction(lambda txn: txn.set("k", "v"))

        self.assertTrue(os.path.exists(os.path.join(self.tmp.name, settings.KV_DB_FILENAME)))
        self.assertTrue(self.entries().filter(key="k").exists())
        self.assertFalse(KeyValueEntry.objects.exists())

    def test_engines_on_different_paths_are_isolated(self):
        with tempfile.TemporaryDirectory() as other_dir:
            other = StorageEngine(other_dir).open()
            try:
                other.write_transaction(lambda txn: txn.set("elsewhere", "v"))
                with self.assertRaises(KeyNotFound):
                    self.engine.read_transaction(lambda txn: txn.get("elsewhere"))
            finally:
                other.close()

    def test_get_missing_key_raises(self):
        with self.assertRaises(KeyNotFound):
            self.engine.read_transaction(lambda txn: txn.get("nope"))

    def test_set_then_get(self):
        version = self.engine.write_transaction(lambda txn: txn.set("k", "v"))
        item = self.engine.read_transaction(lambda txn: txn.get("k"))
        self.assertEqual((item.key, item.value, item.version), ("k", "v", version))

    def test_versions_strictly_increase(self):
        versions = [self.engine.write_transaction(lambda txn: txn.set("k", str(i))) for i in range(5)]
        self.assertEqual(versions, sorted(set(versions)))

    def test_read_transaction_rejects_writes(self):
        with self.assertRaises(StorageError):
            self.engine.read_transaction(lambda txn: txn.set("k", "v"))
        with self.assertRaises(StorageError):
            self.engine.read_transaction(lambda txn: txn.delete("k"))
        self.assertFalse(self.entries().exists())

    def test_failed_write_transaction_discards_everything(self):
        def fail(txn):
            txn.set("a", "1")
            txn.set("b", "2")
            raise RuntimeError("boom")

        with self.assertRaises(RuntimeError):
            self.engine.write_transaction(fail)
        self.assertFalse(self.entries().exists())

    def test_delete_missing_key_raises(self):
        with self.assertRaises(KeyNotFound):
            self.engine.write_transaction(lambda txn: txn.delete("nope"))

    def test_iterate_in_key_order(self):
        def load(txn):
            for key in ["m", "b", "z", "a"]:
                txn.set(key, key * 2)

        self.engine.write_transaction(load)
        items = self.engine.read_transaction(lambda txn: list(txn.iterate(prefetch_size=2)))
        self.assertEqual([item.key for item in items], ["a", "b", "m", "z"])
        self.assertEqual(items[0].value, "aa")

        keys_only = self.engine.read_transaction(lambda txn: list(txn.iterate(prefetch_values=False)))
        self.assertEqual([item.value for item in keys_only], [None] * 4)

    def test_nul_characters_round_trip(self):
        self.engine.write_transaction(lambda txn: txn.set("k", "a\x00b"))
        self.assertEqual(self.engine.read_transaction(lambda txn: txn.get("k")).value, "a\x00b")

    def test_concurrent_writers_all_commit(self):
        versions = []
        errors = []

        def writer(n):
            try:
                for i in range(30):
                    versions.append(
                        self.engine.write_transaction(lambda txn: txn.set(f"k{i % 2}", f"{n}:{i}"))
                    )
            except StorageError as exc:
                errors.append(exc)
            finally:
                self.engine.close()

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(errors, [])
        self.assertEqual(len(set(versions)), 8 * 30)
        newest = self.engine.read_transaction(lambda txn: list(txn.iterate()))
        self.assertEqual([item.key for item in newest], ["k0", "k1"])
        self.assertEqual(max(item.version for item in newest), max(versions))

    def test_size_on_disk_sums_files(self):
        with tempfile.TemporaryDirectory() as data_dir:
            with open(os.path.join(data_dir, "segment"), "wb") as fh:
                fh.write(b"x" * 123)
            os.makedirs(os.path.join(data_dir, "sub"))
            with open(os.path.join(data_dir, "sub", "more"), "wb") as fh:
                fh.write(b"y" * 7)
            self.assertEqual(StorageEngine(data_dir).size_on_disk(), 130)

    def test_size_on_disk_of_missing_directory_is_zero(self):
        self.assertEqual(StorageEngine(os.path.join(self.tmp.name, "absent")).size_on_disk(), 0)

    def test_open_fails_when_path_is_a_file(self):
        path = os.path.join(self.tmp.name, "occupied")
        with open(path, "w") as fh:
            fh.write("not a directory")
        with self.assertRaises(StorageError):
            StorageEngine(path).open()

    @override_settings(KV_ENGINE_LOG=True)
    def test_engine_log_records_statements(self):
        with tempfile.TemporaryDirectory() as data_dir:
            engine = StorageEngine(data_dir).open()
            try:
                self.assertTrue(connections[engine.using].force_debug_cursor)
                with self.assertLogs("django.db.backends", "DEBUG"):
                    engine.read_transaction(lambda txn: list(txn.iterate()))
            finally:
                engine.close()


class ServiceTests(EngineTestCase):
    def test_create_then_get(self):
        created = create_record(self.engine, "k", "v")
        fetched = get_record(self.engine, "k")
        self.assertEqual((fetched.key, fetched.value), ("k", "v"))
        self.assertEqual(fetched.created_at, created.created_at)

    def test_create_stamps_current_time(self):
        record = create_record(self.engine, "k", "v")
        self.assertLess(abs(timezone.now() - record.created_at), timedelta(minutes=1))

    def test_create_empty_key_writes_nothing(self):
        with self.assertRaises(ValueError):
            create_record(self.engine, "", "v")
        self.assertFalse(self.entries().exists())

    def test_repeated_update_is_observationally_idempotent(self):
        update_record(self.engine, "k", "same")
        update_record(self.engine, "k", "same")
        self.assertEqual(get_record(self.engine, "k").value, "same")
        self.assertEqual(get_stats(self.engine).num_keys, 1)

    def test_delete_then_get(self):
        create_record(self.engine, "k", "v")
        delete_record(self.engine, "k")
        with self.assertRaises(KeyNotFound):
            get_record(self.engine, "k")

    def test_list_starts_from_first_key(self):
        for key in ["c", "a", "b"]:
            create_record(self.engine, key, key)
        self.assertEqual([r.key for r in list_records(self.engine, 2)], ["a", "b"])
        self.assertEqual(list_records(self.engine, 0), [])

    def test_search_has_no_result_cap(self):
        for i in range(60):
            create_record(self.engine, f"item:{i:03d}", "v")
        create_record(self.engine, "other", "v")
        self.assertEqual(len(search_records(self.engine, "ITEM")), 60)

    def test_search_requires_query(self):
        with self.assertRaises(ValueError):
            search_records(self.engine, "")

    def test_stats(self):
        create_record(self.engine, "a", "1")
        create_record(self.engine, "b", "2")
        with open(os.path.join(self.tmp.name, "data"), "wb") as fh:
            fh.write(b"z" * 10)

        stats = get_stats(self.engine)
        self.assertEqual(stats.num_keys, 2)
        db_file = os.path.join(self.tmp.name, settings.KV_DB_FILENAME)
        self.assertGreaterEqual(stats.database_size, 10 + os.path.getsize(db_file))


class RecordMapperTests(SimpleTestCase):
    def test_version_is_microseconds_since_epoch(self):
        self.assertEqual(version_to_datetime(0), EPOCH)
        self.assertEqual(version_to_datetime(1_500_000), EPOCH + timedelta(seconds=1.5))

    def test_bytes_are_decoded_without_rejection(self):
        record = to_record(b"key", b"\xffvalue", 0)
        self.assertEqual(record.key, "key")
        self.assertEqual(record.value, "�value")

    def test_missing_value_maps_to_empty_string(self):
        self.assertEqual(to_record("k", None, 0).value, "")

    def test_parse_limit(self):
        self.assertEqual(parse_limit(None), 50)
        self.assertEqual(parse_limit("7"), 7)
        self.assertEqual(parse_limit("-3"), -3)
        self.assertEqual(parse_limit("many"), 50)
        self.assertEqual(parse_limit("+4"), 4)
        self.assertEqual(parse_limit(" 5 "), 50)
        self.assertEqual(parse_limit("5_000"), 50)
        self.assertEqual(parse_limit(""), 50)


class ServeCommandTests(SimpleTestCase):
    def test_engine_open_failure_is_fatal(self):
        with mock.patch.object(StorageEngine, "open", side_effect=StorageError("no disk")):
            with self.assertRaises(CommandError):
                call_command("serve")

    def test_template_failure_is_fatal(self):
        with mock.patch.object(StorageEngine, "open", autospec=True, side_effect=lambda self: self), \
                mock.patch.object(IndexView, "template_name", "storage/missing.html"):
            with self.assertRaises(CommandError):
                call_command("serve")

    def test_starts_server_on_configured_port(self):
        with mock.patch.object(StorageEngine, "open", autospec=True, side_effect=lambda self: self), \
                mock.patch("storage.management.commands.serve.call_command") as run:
            call_command("serve", port="9090")
        run.assert_called_once_with("runserver", "0.0.0.0:9090", use_reloader=False, skip_checks=True)


class EngineQueryLoggingTests(SimpleTestCase):
    def fire(self):
        connection = mock.Mock(force_debug_cursor=False)
        connection_created.send(sender=connection.__class__, connection=connection)
        return connection

    def test_receiver_is_connected(self):
        self.assertTrue(connection_created.has_listeners())
        with override_settings(KV_ENGINE_LOG=True):
            self.assertTrue(self.fire().force_debug_cursor)

    def test_disabled_by_default(self):
        with override_settings(KV_ENGINE_LOG=False):
            self.assertFalse(self.fire().force_debug_cursor)

    def test_enabled_flag_forces_debug_cursor(self):
        connection = mock.Mock(force_debug_cursor=False)
        with override_settings(KV_ENGINE_LOG=True):
            engine_query_logging(sender=None, connection=connection)
        self.assertTrue(connection.force_debug_cursor)


class WsgiStartupTests(SimpleTestCase):
    def setUp(self):
        sys.modules.pop("kvweb.wsgi", None)
        self.addCleanup(sys.modules.pop, "kvweb.wsgi", None)

    def test_application_opens_engine_before_serving(self):
        with mock.patch("storage.startup.prepare") as prepare:
            module = importlib.import_module("kvweb.wsgi")
        prepare.assert_called_once_with()
        self.assertTrue(callable(module.application))

    def test_engine_failure_aborts_boot(self):
        with mock.patch("storage.startup.prepare", side_effect=StorageError("no disk")):
            with self.assertRaises(StorageError):
                importlib.import_module("kvweb.wsgi")
        self.assertNotIn("kvweb.wsgi", sys.modules)


class StartupTests(SimpleTestCase):
    def test_prepare_opens_engine_and_loads_page(self):
        engine = mock.Mock(path="/data")
        with mock.patch("storage.startup.apps.get_app_config", return_value=mock.Mock(engine=engine)), \
                mock.patch("storage.startup.get_template") as get_template:
            self.assertIs(startup.prepare(), engine)
        engine.open.assert_called_once_with()
        get_template.assert_called_once_with(IndexView.template_name)

import re

from django.apps import apps
from django.views.generic import TemplateView
from drf_spectacular.utils import OpenApiParameter, OpenApiResponse, extend_schema
from rest_framework import status
from rest_framework.exceptions import NotFound, ParseError, ValidationError
from rest_framework.response import Response
from rest_framework.views import APIView

from storage.exceptions import KeyNotFound
from storage.serializers import (
    RecordCreateSerializer,
    RecordSerializer,
    RecordUpdateSerializer,
    StatsSerializer,
)
from storage.services import (
    DEFAULT_LIST_LIMIT,
    create_record,
    delete_record,
    get_record,
    get_stats,
    list_records,
    search_records,
    update_record,
)

KEY_PARAMETER = OpenApiParameter(
    name="key",
    type=str,
    location=OpenApiParameter.PATH,
    description="The key, as a single path segment",
)


INTEGER = re.compile(r"[+-]?[0-9]+")


def parse_limit(raw) -> int:
    """Parse ``?limit=``; anything but a plain signed integer means the default."""
    if not raw or not INTEGER.fullmatch(raw):
        return DEFAULT_LIST_LIMIT
    return int(raw)


class IndexView(TemplateView):
    """The single HTML page; it talks to the API from the browser."""

    template_name = "storage/index.html"


class EngineView(APIView):
    """Base view holding the storage engine handle."""

    engine = None

    def get_engine(self):
        if self.engine is not None:
            return self.engine
        return apps.get_app_config("storage").engine

    def read_body(self, request, serializer_class) -> dict:
        """Validate the JSON body; an empty body is malformed JSON."""
        if not request.body:
            raise ParseError("JSON parse error - request body is empty")
        serializer = serializer_class(data=request.data)
        serializer.is_valid(raise_exception=True)
        return serializer.validated_data


class KeyListView(EngineView):
    """List the first keys of the store or create a new one."""

    @extend_schema(
        operation_id="list_keys",
        summary="List key/value pairs",
        description="Return up to `limit` pairs in ascending key order, always starting from the first key.",
        parameters=[
            OpenApiParameter(
                name="limit",
                type=int,
                location=OpenApiParameter.QUERY,
                description=f"Maximum number of results (default: {DEFAULT_LIST_LIMIT})",
                required=False,
            ),
        ],
        responses={200: RecordSerializer(many=True)},
        tags=["Key-Value Operations"],
    )
    def get(self, request):
        limit = parse_limit(request.query_params.get("limit"))
        records = list_records(self.get_engine(), limit)
        return Response(RecordSerializer(records, many=True).data)

    @extend_schema(
        operation_id="create_key",
        summary="Create a key/value pair",
        description="Store a pair. An existing key is silently overwritten.",
        request=RecordCreateSerializer,
        responses={
            200: OpenApiResponse(response=RecordSerializer, description="The stored pair"),
            400: OpenApiResponse(description="Empty key or malformed JSON"),
        },
        tags=["Key-Value Operations"],
    )
    def post(self, request):
        data = self.read_body(request, RecordCreateSerializer)
        try:
            record = create_record(self.get_engine(), data["key"], data["value"])
        except ValueError as e:
            raise ValidationError({"detail": str(e)})
        return Response(RecordSerializer(record).data, status=status.HTTP_200_OK)


class KeyDetailView(EngineView):
    """Handle single key operations."""

    @extend_schema(
        operation_id="read_key",
        summary="Read a key/value pair",
        parameters=[KEY_PARAMETER],
        responses={
            200: RecordSerializer,
            404: OpenApiResponse(description="Key not found"),
        },
        tags=["Key-Value Operations"],
    )
    def get(self, request, key: str):
        try:
            record = get_record(self.get_engine(), key)
        except KeyNotFound as exc:
            raise NotFound("Key not found") from exc
        return Response(RecordSerializer(record).data)

    @extend_schema(
        operation_id="update_key",
        summary="Update a key/value pair",
        description="Replace the value of a key. A missing key is created.",
        parameters=[KEY_PARAMETER],
        request=RecordUpdateSerializer,
        responses={
            200: RecordSerializer,
            400: OpenApiResponse(description="Malformed JSON"),
        },
        tags=["Key-Value Operations"],
    )
    def put(self, request, key: str):
        data = self.read_body(request, RecordUpdateSerializer)
        record = update_record(self.get_engine(), key, data["value"])
        return Response(RecordSerializer(record).data)

    @extend_schema(
        operation_id="delete_key",
        summary="Delete a key/value pair",
        parameters=[KEY_PARAMETER],
        responses={
            204: OpenApiResponse(description="Successfully deleted the key/value pair"),
            404: OpenApiResponse(description="Key not found"),
        },
        tags=["Key-Value Operations"],
    )
    def delete(self, request, key: str):
        try:
            delete_record(self.get_engine(), key)
        except KeyNotFound as exc:
            raise NotFound("Key not found") from exc
        return Response(status=status.HTTP_204_NO_CONTENT)


class SearchView(EngineView):
    """Case-insensitive substring search over keys."""

    @extend_schema(
        operation_id="search_keys",
        summary="Search keys",
        description="Scan the whole store and return every pair whose key contains `q`, ignoring case.",
        parameters=[
            OpenApiParameter(
                name="q",
                type=str,
                location=OpenApiParameter.QUERY,
                description="Substring to look for in keys",
                required=True,
            ),
        ],
        responses={
            200: RecordSerializer(many=True),
            400: OpenApiResponse(description="Missing q"),
        },
        tags=["Key-Value Operations"],
    )
    def get(self, request):
        try:
            records = search_records(self.get_engine(), request.query_params.get("q", ""))
        except ValueError as e:
            raise ValidationError({"detail": str(e)})
        return Response(RecordSerializer(records, many=True).data)


class StatsView(EngineView):
    """Key count and on-disk size of the store."""

    @extend_schema(
        operation_id="stats",
        summary="Store statistics",
        responses={200: StatsSerializer},
        tags=["Monitoring"],
    )
    def get(self, request):
        return Response(StatsSerializer(get_stats(self.get_engine())).data)

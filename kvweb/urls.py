from django.conf import settings
from django.urls import include, path, re_path
from django.views.static import serve
from drf_spectacular.views import SpectacularAPIView

from storage.views import IndexView

urlpatterns = [
    path("", IndexView.as_view(), name="index"),
    path("api/schema", SpectacularAPIView.as_view(), name="schema"),
    path("api/", include("storage.urls")),
    re_path(r"^static/(?P<path>.*)$", serve, {"document_root": settings.KV_STATIC_ROOT}),
]

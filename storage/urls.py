from django.urls import path

from storage.views import KeyDetailView, KeyListView, SearchView, StatsView

app_name = "storage"

urlpatterns = [
    path("keys", KeyListView.as_view(), name="key-list"),
    path("keys/<str:key>", KeyDetailView.as_view(), name="key-detail"),
    path("stats", StatsView.as_view(), name="stats"),
    path("search", SearchView.as_view(), name="search"),
]

from django.db import models


class KeyValueEntry(models.Model):
    """One live key in the store, with the version token of its last write."""

    key = models.TextField(unique=True)
    value = models.TextField(blank=True, default="")
    version = models.BigIntegerField(db_index=True)

    class Meta:
        ordering = ["key"]

    def __str__(self) -> str:
        return f"{self.key} (v{self.version})"

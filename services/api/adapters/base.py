"""
Storage adapter interface for the order engine.
Defines the contract that all storage backends must implement.
"""

from datetime import datetime, timedelta, timezone
from typing import Protocol, List, Dict, Any, Optional


class StorageAdapter(Protocol):
    """
    Protocol defining the interface for all storage adapters.

    This allows swapping between SQLite, a JSON file and Supabase
    without changing the engine or router code.

    NOTE:
    - Methods are synchronous; the engine calls them from a worker thread.
    - Errors are reported with the core.errors taxonomy
      (OrderNotFound, VersionConflict, NetworkFailure, PermissionDenied).
    """

    # ========== Orders ==========

    def get_order(self, order_id: str) -> Optional[Dict[str, Any]]:
        """
        Fetch an order row by id.

        Returns:
            Dict with order columns, or None if not found.
        """
        ...

    def create_order(self, values: Dict[str, Any]) -> Dict[str, Any]:
        """
        Insert a new order (status defaults to 'Новый').

        Returns:
            The stored row, including generated `id` and `updated_at`.
        """
        ...

    def update_order_if_version(
        self,
        order_id: str,
        patch: Dict[str, Any],
        expected_updated_at: Optional[str],
    ) -> Dict[str, Any]:
        """
        Atomic compare-and-set update.

        Applies `patch` only if the stored `updated_at` equals
        `expected_updated_at`, and writes a new, different `updated_at`.
        With `expected_updated_at=None` the patch is applied unconditionally.

        Returns:
            The updated row.

        Raises:
            VersionConflict: token mismatch (`latest` carries the current row)
            OrderNotFound: no such order
        """
        ...

    def accept_order(self, order_id: str, user_id: str) -> bool:
        """
        Atomically take an order from the feed.

        Sets assigned_to=user_id and status='В работе' only if the order is
        currently unassigned. Exactly one of concurrent callers gets True.
        """
        ...

    def delete_order(self, order_id: str) -> None:
        """
        Delete the order row.

        Raises:
            OrderNotFound: no such order
        """
        ...

    # ========== Form schema ==========

    def list_order_field_settings(self, company_id: str) -> List[Dict[str, Any]]:
        """
        Company-enabled builtin fields.

        Returns:
            Rows with:
                - field_key
                - is_enabled_create / is_enabled_edit / is_visible_read
                - is_required (optional)
        """
        ...

    def get_form_schema(self, context: str) -> Optional[Dict[str, Any]]:
        """
        Legacy server-side schema: {"context": ..., "fields": [...]} or None.
        """
        ...

    # ========== Directory ==========

    def get_company(self, company_id: str) -> Optional[Dict[str, Any]]:
        """Company row with at least `id` and `use_work_types`."""
        ...

    def get_user_display_name(self, user_id: str) -> Optional[str]:
        """Human readable executor name (full name, else email)."""
        ...


def next_version_token(previous: Optional[str] = None) -> str:
    """
    New `updated_at` value for a write.

    ISO-8601 UTC with microseconds, guaranteed to differ from (and sort
    after) `previous` even when the clock has not advanced.
    """
    now = datetime.now(timezone.utc)
    if previous:
        try:
            prev = datetime.fromisoformat(str(previous).replace("Z", "+00:00"))
            if prev.tzinfo is None:
                prev = prev.replace(tzinfo=timezone.utc)
            if now <= prev:
                now = prev + timedelta(microseconds=1)
        except ValueError:
            pass
    return now.isoformat(timespec="microseconds")

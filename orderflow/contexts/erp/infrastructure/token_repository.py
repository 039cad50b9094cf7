from __future__ import annotations

from orderflow.infrastructure.repositories.base import BaseRepository


class ErpTokenRepository(BaseRepository):
    """One OAuth token pair per tenant."""

    def get(self, db) -> dict | None:
        row = db.execute(
            """
            SELECT tenant_id, access_token, refresh_token, token_type, expires_at, updated_at
            FROM erp_tokens
            WHERE tenant_id = ?
            LIMIT 1
            """,
            (self.tenant_id,),
        ).fetchone()
        return self.row_to_dict(row)

    def upsert(
        self,
        db,
        *,
        access_token: str,
        refresh_token: str,
        expires_at: str,
        token_type: str = "Bearer",
    ) -> None:
        db.execute(
            """
            INSERT INTO erp_tokens (tenant_id, access_token, refresh_token, token_type, expires_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (tenant_id) DO UPDATE SET
                access_token = excluded.access_token,
                refresh_token = excluded.refresh_token,
                token_type = excluded.token_type,
                expires_at = excluded.expires_at,
                updated_at = CURRENT_TIMESTAMP
            """,
            (self.tenant_id, access_token, refresh_token, token_type, expires_at),
        )

    def rotate(
        self,
        db,
        *,
        expected_refresh_token: str,
        access_token: str,
        refresh_token: str,
        expires_at: str,
        token_type: str = "Bearer",
    ) -> bool:
        """Replace the pair only if it still holds ``expected_refresh_token``."""
        cursor = db.execute(
            """
            UPDATE erp_tokens
            SET access_token = ?, refresh_token = ?, token_type = ?, expires_at = ?,
                updated_at = CURRENT_TIMESTAMP
            WHERE tenant_id = ? AND refresh_token = ?
            """,
            (access_token, refresh_token, token_type, expires_at, self.tenant_id, expected_refresh_token),
        )
        return int(cursor.rowcount or 0) == 1

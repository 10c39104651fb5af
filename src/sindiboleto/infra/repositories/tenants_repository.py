"""Tenant resolution from evolution_configs."""

from psycopg2.extensions import cursor as PgCursor

from sindiboleto.domain.ports import Tenant
from sindiboleto.infra.db import fetchone
from sindiboleto.whatsapp.models import EvolutionConfig


def find_by_instance(cur: PgCursor, *, instance_name: str) -> Tenant | None:
    row = fetchone(
        cur,
        """
        SELECT clinic_id, api_url, api_key, instance_name
        FROM evolution_configs
        WHERE instance_name = %s AND is_active
        """,
        (instance_name,),
    )
    if row is None:
        return None
    clinic_id, api_url, api_key, name = row
    return Tenant(
        clinic_id=str(clinic_id),
        gateway=EvolutionConfig(api_url=api_url, api_key=api_key, instance_name=name),
    )


def find_by_clinic(cur: PgCursor, *, clinic_id: str) -> Tenant | None:
    """Tenant for a clinic id; gateway is None when it has no active instance."""
    row = fetchone(
        cur,
        """
        SELECT c.id, e.api_url, e.api_key, e.instance_name
        FROM clinics c
        LEFT JOIN evolution_configs e ON e.clinic_id = c.id AND e.is_active
        WHERE c.id = %s
        ORDER BY e.created_at DESC NULLS LAST
        LIMIT 1
        """,
        (clinic_id,),
    )
    if row is None:
        return None
    found_id, api_url, api_key, name = row
    gateway = None
    if api_url and api_key and name:
        gateway = EvolutionConfig(api_url=api_url, api_key=api_key, instance_name=name)
    return Tenant(clinic_id=str(found_id), gateway=gateway)

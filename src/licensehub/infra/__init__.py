"""Infrastructure connections (DB, AWS)."""

from licensehub.infra.aws import close_aws, get_aws_client, init_aws
from licensehub.infra.postgresql import (
    advisory_xact_lock,
    build_engine,
    build_session_factory,
    close_db,
    create_tables,
    get_engine,
    get_session_factory,
    init_db,
)

__all__ = [
    # DB
    "init_db",
    "close_db",
    "build_engine",
    "build_session_factory",
    "create_tables",
    "get_engine",
    "get_session_factory",
    "advisory_xact_lock",
    # AWS
    "init_aws",
    "close_aws",
    "get_aws_client",
]

import os
from flask import Flask


def create_app():
    app = Flask(__name__)

    # Documents live in PostgreSQL (JSONB); there is no local file fallback
    db_url = os.environ.get("DATABASE_URL")
    if not db_url:
        raise RuntimeError(
            "DATABASE_URL is required. Team, player and match documents are stored in PostgreSQL."
        )

    # Initialize connection pool early (optional; direct connect works if pool init fails)
    try:
        from . import docstore_pg as _pg
        try:
            minconn = int(os.environ.get("DB_POOL_MIN", "1"))
        except ValueError:
            minconn = 1
        try:
            maxconn = int(os.environ.get("DB_POOL_MAX", "10"))
        except ValueError:
            maxconn = 10
        _pg.init_pool(minconn=minconn, maxconn=maxconn)
    except Exception:  # pragma: no cover
        app.logger.exception("PostgreSQL pool initialization failed; continuing without pool")

    from . import routes  # type: ignore
    app.register_blueprint(routes.bp)

    if os.environ.get("ENSURE_SCHEMA_ON_STARTUP", "1") != "0":
        app.logger.info("Ensuring document schema")
        try:
            from . import docstore
            docstore.ensure_schema()
        except Exception:  # pylint: disable=broad-except
            app.logger.exception("Error ensuring document schema")

    return app


if __name__ == '__main__':
    port = int(os.environ.get('PORT', 5000))
    create_app().run(host='0.0.0.0', port=port)

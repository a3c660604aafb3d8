import json
from typing import Any, Dict, Optional

from spsync import db


def log_crawl_run_log(
    run_id: str,
    level: str,
    message: str,
    context: Optional[Dict[str, Any]] = None,
):
    db.execute(
        """
        INSERT INTO crawl_run_logs (run_id, level, message, context)
        VALUES (%s, %s, %s, %s::jsonb)
        """,
        [
            run_id,
            level,
            message,
            json.dumps(context or {}, default=str),
        ],
    )

import logging

from .utils import chunked

logger = logging.getLogger(__name__)

# Lookup table -> column holding the display label
LOOKUP_LABEL_COLUMNS = {
    "tags": "label",
    "companies": "name",
    "controllers": "name",
    "platform_families": "name",
}


def backfill_placeholder_labels(ctx, table, limit=None):
    """Replace QID placeholder labels in a lookup table with upstream English labels."""
    column = LOOKUP_LABEL_COLUMNS[table]
    sql = f"SELECT DISTINCT qid FROM {table} WHERE {column} = qid ORDER BY qid"
    params = ()
    if limit:
        sql += " LIMIT ?"
        params = (limit,)
    qids = [row["qid"] for row in ctx.store.query(sql, params)]
    if not qids:
        return {"scanned": 0, "resolved": 0, "unresolved": 0}

    resolved = 0
    unresolved = 0
    for batch in chunked(qids, 500):
        labels = ctx.labels.resolve(batch)
        updates = []
        for qid in batch:
            label = (labels.get(qid) or (None, None))[0]
            if label and label.strip():
                updates.append((label.strip(), qid))
            else:
                unresolved += 1
        if not updates:
            continue

        def _write(conn, updates=updates):
            conn.executemany(f"UPDATE {table} SET {column} = ? WHERE qid = ? AND {column} = qid", updates)
            return len(updates)

        resolved += ctx.store.write(_write, label=f"labels {table}")
    logger.info("[+] %s: resolved %s placeholder labels (%s unresolved)", table, resolved, unresolved)
    return {"scanned": len(qids), "resolved": resolved, "unresolved": unresolved}

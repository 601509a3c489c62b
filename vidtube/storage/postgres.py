from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

from vidtube.logging import get_logger
from vidtube.storage.errors import ConstraintViolation
from vidtube.storage.models import (
    COLLECTIONS,
    LIKE_TARGETS,
    Account,
    Comment,
    Like,
    Subscription,
    Tweet,
    Video,
    new_id,
)
from vidtube.storage.pipeline import (
    SENSITIVE_FIELDS,
    Count,
    First,
    Group,
    In,
    Limit,
    Lookup,
    Match,
    NotNull,
    Pipeline,
    Project,
    Search,
    Skip,
    Sort,
    Stage,
    Sum,
    Unwind,
    split_path,
)

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS {table} (
        id TEXT PRIMARY KEY,
        seq BIGSERIAL NOT NULL,
        doc JSONB NOT NULL
    )
    """.format(table=table)
    for table in COLLECTIONS
] + [
    "CREATE UNIQUE INDEX IF NOT EXISTS accounts_username_key ON accounts ((doc->>'username'))",
    "CREATE UNIQUE INDEX IF NOT EXISTS accounts_email_key ON accounts ((doc->>'email'))",
    "CREATE UNIQUE INDEX IF NOT EXISTS subscriptions_pair_key "
    "ON subscriptions ((doc->>'subscriber'), (doc->>'channel'))",
] + [
    f"CREATE UNIQUE INDEX IF NOT EXISTS likes_{target}_key "
    f"ON likes ((doc->>'liked_by'), (doc->>'{target}')) WHERE doc->>'{target}' IS NOT NULL"
    for target in LIKE_TARGETS
]

_CONSTRAINT_FIELDS = {
    "accounts_username_key": "username",
    "accounts_email_key": "email",
}


class _PipelineCompiler:
    """Translate pipeline stages into nested SQL over JSONB tables.

    Every intermediate relation exposes ``doc`` (jsonb) and ``ord`` (bigint);
    ``ord`` carries row order from stage to stage so insertion order survives
    joins, unwinds and pagination.
    """

    def __init__(self) -> None:
        self.params: Dict[str, Any] = {}
        self._aliases = 0

    def param(self, value: Any) -> str:
        name = f"p{len(self.params)}"
        self.params[name] = value
        return f"%({name})s"

    def alias(self) -> str:
        self._aliases += 1
        return f"s{self._aliases}"

    def path(self, alias: str, path: str) -> str:
        return f"({alias}.doc #> {self.param(split_path(path))}::text[])"

    def table(self, collection: str) -> str:
        if collection not in COLLECTIONS:
            raise ValueError(f"unknown collection {collection!r}")
        return collection

    def doc_expr(self, collection: str, alias: str) -> str:
        hidden = SENSITIVE_FIELDS.get(collection)
        if hidden:
            return f"({alias}.doc - {self.param(list(hidden))}::text[])"
        return f"{alias}.doc"

    def source(self, collection: str) -> str:
        t = self.alias()
        return (
            f"SELECT {self.doc_expr(collection, t)} AS doc, {t}.seq AS ord "
            f"FROM {self.table(collection)} {t}"
        )

    def stages(self, sql: str, stages: Sequence[Stage]) -> str:
        for stage in stages:
            if isinstance(stage, Match):
                sql = self._match(sql, stage)
            elif isinstance(stage, Search):
                sql = self._search(sql, stage)
            elif isinstance(stage, Lookup):
                sql = self._lookup(sql, stage)
            elif isinstance(stage, Unwind):
                sql = self._unwind(sql, stage)
            elif isinstance(stage, Project):
                a = self.alias()
                sql = f"SELECT {self._object(a, stage.fields)} AS doc, {a}.ord FROM ({sql}) {a}"
            elif isinstance(stage, Group):
                sql = self._group(sql, stage)
            elif isinstance(stage, Sort):
                sql = self._sort(sql, stage)
            elif isinstance(stage, Skip):
                a = self.alias()
                sql = (
                    f"SELECT {a}.doc, {a}.ord FROM ({sql}) {a} "
                    f"ORDER BY {a}.ord OFFSET {self.param(max(stage.count, 0))}"
                )
            elif isinstance(stage, Limit):
                a = self.alias()
                sql = (
                    f"SELECT {a}.doc, {a}.ord FROM ({sql}) {a} "
                    f"ORDER BY {a}.ord LIMIT {self.param(max(stage.count, 0))}"
                )
            else:
                raise TypeError(f"unsupported stage {stage!r}")
        return sql

    def _match(self, sql: str, stage: Match) -> str:
        a = self.alias()
        conditions = []
        for field_path, expected in stage.conditions.items():
            value = self.path(a, field_path)
            if isinstance(expected, NotNull):
                conditions.append(f"jsonb_typeof({value}) <> 'null'")
            elif isinstance(expected, In):
                conditions.append(
                    f"{self.param(Jsonb(list(expected.values)))} @> jsonb_build_array({value})"
                )
            else:
                conditions.append(f"{value} = {self.param(Jsonb(expected))}")
        where = " AND ".join(conditions) or "true"
        return f"SELECT {a}.doc, {a}.ord FROM ({sql}) {a} WHERE {where}"

    def _search(self, sql: str, stage: Search) -> str:
        a = self.alias()
        if not stage.text:
            return f"SELECT {a}.doc, {a}.ord FROM ({sql}) {a}"
        escaped = (
            stage.text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        )
        pattern = self.param(f"%{escaped}%")
        conditions = []
        for field_path in stage.paths:
            text_path = f"{self.param(split_path(field_path))}::text[]"
            conditions.append(
                f"(jsonb_typeof({a}.doc #> {text_path}) = 'string' "
                f"AND ({a}.doc #>> {text_path}) ILIKE {pattern} ESCAPE '\\')"
            )
        where = " OR ".join(conditions) or "false"
        return f"SELECT {a}.doc, {a}.ord FROM ({sql}) {a} WHERE ({where})"

    def _lookup(self, sql: str, stage: Lookup) -> str:
        a = self.alias()
        local = self.path(a, stage.local_field)
        f = self.alias()
        foreign_key = self.path(f, stage.foreign_field)
        table = self.table(stage.from_)
        if stage.many_local:
            e = self.alias()
            foreign = (
                f"SELECT {self.doc_expr(stage.from_, f)} AS doc, "
                f"row_number() OVER (ORDER BY {e}.idx, {f}.seq) AS ord "
                f"FROM jsonb_array_elements(CASE WHEN jsonb_typeof({local}) = 'array' "
                f"THEN {local} ELSE '[]'::jsonb END) WITH ORDINALITY AS {e}(value, idx) "
                f"JOIN {table} {f} ON {foreign_key} = {e}.value"
            )
        else:
            foreign = (
                f"SELECT {self.doc_expr(stage.from_, f)} AS doc, {f}.seq AS ord "
                f"FROM {table} {f} "
                f"WHERE {foreign_key} = {local} AND jsonb_typeof({local}) <> 'null'"
            )
        sub = self.stages(foreign, stage.pipeline)
        x = self.alias()
        if stage.mode == "count":
            expr = f"(SELECT count(*) FROM ({sub}) {x})"
        elif stage.mode == "exists":
            expr = f"EXISTS (SELECT 1 FROM ({sub}) {x})"
        else:
            expr = (
                f"COALESCE((SELECT jsonb_agg({x}.doc ORDER BY {x}.ord) "
                f"FROM ({sub}) {x}), '[]'::jsonb)"
            )
        return (
            f"SELECT {a}.doc || jsonb_build_object({self.param(stage.as_)}::text, {expr}) AS doc, "
            f"{a}.ord FROM ({sql}) {a}"
        )

    def _unwind(self, sql: str, stage: Unwind) -> str:
        a = self.alias()
        e = self.alias()
        path = self.param(split_path(stage.path))
        items = f"({a}.doc #> {path}::text[])"
        elements = (
            f"jsonb_array_elements(CASE WHEN jsonb_typeof({items}) = 'array' "
            f"THEN {items} ELSE '[]'::jsonb END) WITH ORDINALITY AS {e}(value, idx)"
        )
        if stage.preserve_empty:
            join = f"LEFT JOIN LATERAL {elements} ON true"
            value = f"COALESCE({e}.value, 'null'::jsonb)"
        else:
            join = f"CROSS JOIN LATERAL {elements}"
            value = f"{e}.value"
        return (
            f"SELECT jsonb_set({a}.doc, {path}::text[], {value}) AS doc, "
            f"row_number() OVER (ORDER BY {a}.ord, {e}.idx) AS ord "
            f"FROM ({sql}) {a} {join}"
        )

    def _object(self, alias: str, shape: Mapping[str, Any]) -> str:
        args = []
        for name, sub in shape.items():
            if isinstance(sub, Mapping):
                value = self._object(alias, sub)
            else:
                value = self.path(alias, sub)
            args.append(f"{self.param(name)}::text, {value}")
        return f"jsonb_build_object({', '.join(args)})"

    def _group(self, sql: str, stage: Group) -> str:
        a = self.alias()
        args = []
        for name, acc in stage.accumulators.items():
            if isinstance(acc, Count):
                value = "count(*)"
            elif isinstance(acc, Sum):
                item = self.path(a, acc.path)
                value = (
                    f"COALESCE(sum(CASE WHEN jsonb_typeof({item}) = 'number' "
                    f"THEN ({item} #>> '{{}}')::numeric END), 0)"
                )
            elif isinstance(acc, First):
                value = f"(array_agg({self.path(a, acc.path)} ORDER BY {a}.ord))[1]"
            else:
                raise TypeError(f"unsupported accumulator {acc!r}")
            args.append(f"{self.param(name)}::text, {value}")
        return (
            f"SELECT jsonb_build_object({', '.join(args)}) AS doc, 1::bigint AS ord "
            f"FROM ({sql}) {a}"
        )

    def _sort(self, sql: str, stage: Sort) -> str:
        a = self.alias()
        keys = [
            f"{self.path(a, field_path)} {'ASC NULLS FIRST' if direction > 0 else 'DESC NULLS LAST'}"
            for field_path, direction in stage.keys
        ]
        keys.append(f"{a}.ord")
        return (
            f"SELECT {a}.doc, row_number() OVER (ORDER BY {', '.join(keys)}) AS ord "
            f"FROM ({sql}) {a}"
        )


def compile_pipeline(pipeline: Pipeline) -> Tuple[str, Dict[str, Any]]:
    """Compile ``pipeline`` into a single SQL statement and its named parameters."""
    compiler = _PipelineCompiler()
    body = compiler.stages(compiler.source(pipeline.collection), pipeline.stages)
    final = compiler.alias()
    return f"SELECT {final}.doc FROM ({body}) {final} ORDER BY {final}.ord", compiler.params


class PostgresStore:
    """Postgres-backed document store; one JSONB table per collection."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    def _insert(self, collection: str, doc: Dict[str, Any]) -> None:
        with self._connect() as conn:
            conn.execute(
                f"INSERT INTO {collection} (id, doc) VALUES (%s, %s)",
                (doc["id"], Jsonb(doc)),
            )

    def _get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT doc FROM {collection} WHERE id = %s", (doc_id,)
            ).fetchone()
        return row["doc"] if row else None

    # accounts
    def create_account(
        self,
        username: str,
        email: str,
        full_name: str,
        password_hash: str,
        *,
        avatar: Optional[str] = None,
        cover_image: Optional[str] = None,
    ) -> Account:
        account = Account(
            id=new_id(),
            username=username.strip().lower(),
            email=email.strip().lower(),
            full_name=full_name,
            password_hash=password_hash,
            avatar=avatar,
            cover_image=cover_image,
        )
        try:
            self._insert("accounts", account.to_doc())
        except errors.UniqueViolation as exc:
            constraint = getattr(exc.diag, "constraint_name", None)
            field_name = _CONSTRAINT_FIELDS.get(constraint or "", "username")
            raise ConstraintViolation(
                f"{field_name} already exists", {"field": field_name}
            ) from exc
        return account

    def get_account(self, account_id: str) -> Optional[Account]:
        doc = self._get("accounts", account_id)
        return Account.from_doc(doc) if doc else None

    def get_account_by_login(self, login: str) -> Optional[Account]:
        needle = login.strip().lower()
        with self._connect() as conn:
            row = conn.execute(
                "SELECT doc FROM accounts WHERE doc->>'username' = %s OR doc->>'email' = %s "
                "ORDER BY seq LIMIT 1",
                (needle, needle),
            ).fetchone()
        return Account.from_doc(row["doc"]) if row else None

    def set_refresh_token(self, account_id: str, token: Optional[str]) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE accounts
                SET doc = doc || jsonb_build_object('refresh_token', %s::text, 'updated_at', %s::text)
                WHERE id = %s
                RETURNING id
                """,
                (token, datetime.now(timezone.utc).isoformat(), account_id),
            ).fetchone()
        return row is not None

    def swap_refresh_token(
        self, account_id: str, expected: str, new_token: Optional[str]
    ) -> bool:
        """Compare-and-swap the stored refresh token in a single UPDATE."""
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE accounts
                SET doc = doc || jsonb_build_object('refresh_token', %s::text, 'updated_at', %s::text)
                WHERE id = %s AND doc->>'refresh_token' = %s
                RETURNING id
                """,
                (new_token, datetime.now(timezone.utc).isoformat(), account_id, expected),
            ).fetchone()
        return row is not None

    def push_watch_history(self, account_id: str, video_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE accounts
                SET doc = doc || jsonb_build_object(
                    'watch_history',
                    jsonb_build_array(%s::text) || COALESCE(doc->'watch_history', '[]'::jsonb)
                )
                WHERE id = %s
                RETURNING id
                """,
                (video_id, account_id),
            ).fetchone()
        return row is not None

    # videos, comments, tweets
    def create_video(
        self,
        owner: str,
        title: str,
        video_file: str,
        thumbnail: str,
        *,
        description: str = "",
        duration: float = 0.0,
        views: int = 0,
        is_published: bool = True,
    ) -> Video:
        video = Video(
            id=new_id(),
            owner=owner,
            title=title,
            video_file=video_file,
            thumbnail=thumbnail,
            description=description,
            duration=duration,
            views=views,
            is_published=is_published,
        )
        self._insert("videos", video.to_doc())
        return video

    def get_video(self, video_id: str) -> Optional[Video]:
        doc = self._get("videos", video_id)
        return Video.from_doc(doc) if doc else None

    def increment_views(self, video_id: str) -> Optional[int]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE videos
                SET doc = doc || jsonb_build_object('views', COALESCE((doc->>'views')::bigint, 0) + 1)
                WHERE id = %s
                RETURNING (doc->>'views')::bigint AS views
                """,
                (video_id,),
            ).fetchone()
        return int(row["views"]) if row else None

    def create_comment(self, video: str, owner: str, content: str) -> Comment:
        comment = Comment(id=new_id(), content=content, video=video, owner=owner)
        self._insert("comments", comment.to_doc())
        return comment

    def get_comment(self, comment_id: str) -> Optional[Comment]:
        doc = self._get("comments", comment_id)
        return Comment.from_doc(doc) if doc else None

    def create_tweet(self, owner: str, content: str) -> Tweet:
        tweet = Tweet(id=new_id(), content=content, owner=owner)
        self._insert("tweets", tweet.to_doc())
        return tweet

    def get_tweet(self, tweet_id: str) -> Optional[Tweet]:
        doc = self._get("tweets", tweet_id)
        return Tweet.from_doc(doc) if doc else None

    # toggle relationships
    def toggle_subscription(self, subscriber: str, channel: str) -> bool:
        """Delete-or-insert in one transaction; the pair index rejects duplicates."""
        sub = Subscription(id=new_id(), subscriber=subscriber, channel=channel)
        with self._connect() as conn:
            deleted = conn.execute(
                """
                DELETE FROM subscriptions
                WHERE doc->>'subscriber' = %s AND doc->>'channel' = %s
                RETURNING id
                """,
                (subscriber, channel),
            ).fetchone()
            if deleted:
                return False
            conn.execute(
                "INSERT INTO subscriptions (id, doc) VALUES (%s, %s) ON CONFLICT DO NOTHING",
                (sub.id, Jsonb(sub.to_doc())),
            )
        return True

    def toggle_like(self, liked_by: str, kind: str, target: str) -> bool:
        if kind not in LIKE_TARGETS:
            raise ValueError(f"unknown like target {kind!r}")
        like = Like(id=new_id(), liked_by=liked_by, **{kind: target})
        with self._connect() as conn:
            deleted = conn.execute(
                f"DELETE FROM likes WHERE doc->>'liked_by' = %s AND doc->>'{kind}' = %s RETURNING id",
                (liked_by, target),
            ).fetchone()
            if deleted:
                return False
            conn.execute(
                "INSERT INTO likes (id, doc) VALUES (%s, %s) ON CONFLICT DO NOTHING",
                (like.id, Jsonb(like.to_doc())),
            )
        return True

    # derived views
    def aggregate(self, pipeline: Pipeline) -> List[Dict[str, Any]]:
        sql, params = compile_pipeline(pipeline)
        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [row["doc"] for row in rows]

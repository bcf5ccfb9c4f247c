"""
DB接続（SQLAlchemy エンジン・セッション）

【初心者向け】
- engine: DBへの接続プール。URLは settings.database_url（デフォルトはSQLiteファイル）
- session: 1回のまとまった読み書き（トランザクション）の単位
- SQLiteでは外部キー制約がデフォルト無効なので、接続ごとに PRAGMA で有効化する
"""
import logging
from functools import lru_cache
from pathlib import Path

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker
from sqlalchemy.pool import StaticPool

from textbook_qa.core.settings import settings

# ロガー設定
logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """全テーブル共通の宣言ベース"""
    pass


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def create_db_engine(url: str) -> Engine:
    """
    URLからエンジンを作成

    - SQLite: スレッドをまたいで使えるよう check_same_thread=False
    - インメモリSQLite: 全セッションで同じ接続を共有（StaticPool）

    Args:
        url: SQLAlchemyの接続URL

    Returns:
        Engine
    """
    kwargs: dict = {"echo": False}
    if _is_sqlite(url):
        kwargs["connect_args"] = {"check_same_thread": False}  # Required for SQLite
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        else:
            # ファイルの親ディレクトリを作成（存在しない場合）
            db_path = url.split("///", 1)[-1]
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    engine = create_engine(url, **kwargs)

    if _is_sqlite(url):
        @event.listens_for(engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


def create_session_factory(engine: Engine) -> sessionmaker:
    """
    セッションファクトリを作成

    expire_on_commit=False: コミット後もORMオブジェクトの値を読めるようにする
    （Storeはセッションを閉じてから結果を返すため）
    """
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    """全テーブルを作成（起動時に1回呼ぶ）"""
    # モデルをimportして Base.metadata にテーブルを登録させる
    from textbook_qa.db import models  # noqa: F401
    Base.metadata.create_all(bind=engine)
    logger.info(f"DBテーブル作成完了: url={engine.url.render_as_string(hide_password=True)}")


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    """
    アプリ全体で共有するエンジンを取得（@lru_cacheで生成を抑える）
    """
    return create_db_engine(settings.database_url)

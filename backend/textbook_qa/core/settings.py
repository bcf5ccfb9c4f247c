"""
アプリケーション設定（環境変数・定数の一元管理）

【初心者向け】
- Pydantic Settings: 環境変数や.envを読んで型付きで扱うための仕組み
- ここで定義した値は textbook_qa.core.settings.settings から参照できる
- 主な分類: CORS, 保存先(DB/Chroma/Blob), 取り込み, 検索, LLM(Ollama/Gemini), キャッシュ
"""
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List


class Settings(BaseSettings):
    """
    アプリケーション設定クラス
    環境変数（または.env）の値が自動でここにマッピングされる
    """

    # CORS設定
    cors_origins: List[str] = ["http://localhost:3000"]

    # 保存先
    database_url: str = Field(
        default="sqlite:///./data/textbook_qa.db",
        alias="DATABASE_URL",
        description="SQLAlchemyの接続URL（documents/sections/chunks/jobs/logs）"
    )
    chroma_dir: str = Field(
        default="backend/.chroma",
        alias="CHROMA_DIR",
        description="ChromaDBの永続化ディレクトリ（近傍探索用）"
    )
    chroma_collection: str = Field(
        default="textbook_chunks",
        alias="CHROMA_COLLECTION",
        description="ChromaDBのコレクション名"
    )
    blob_dir: str = Field(
        default="backend/data/blobs",
        alias="BLOB_DIR",
        description="アップロード原本・正規化テキストの保存ディレクトリ"
    )

    # Embedding
    embedding_model: str = Field(
        default="intfloat/multilingual-e5-small",
        alias="EMBEDDING_MODEL",
        description="Embeddingモデル名（E5系: query/passage prefixで用途を区別）"
    )
    embedding_batch_size: int = Field(
        default=100,
        alias="EMBEDDING_BATCH_SIZE",
        description="Embedding 1回あたりのテキスト数"
    )

    # チャンキング（トークン数は 文字数/4 の概算）
    chunk_max_tokens: int = Field(
        default=350,
        alias="CHUNK_MAX_TOKENS",
        description="チャンクの上限トークン数（概算）"
    )
    chunk_min_tokens: int = Field(
        default=30,
        alias="CHUNK_MIN_TOKENS",
        description="これ未満のチャンクは断片として捨てる"
    )
    keywords_top_n: int = Field(
        default=10,
        alias="KEYWORDS_TOP_N",
        description="チャンクごとに保持するキーワード数"
    )
    chunk_insert_batch_size: int = Field(
        default=50,
        alias="CHUNK_INSERT_BATCH_SIZE",
        description="チャンク保存のバッチサイズ（トランザクションの大きさ）"
    )

    # 検索
    retrieval_top_k: int = Field(
        default=20,
        alias="RETRIEVAL_TOP_K",
        description="ベクトル検索の一次取得件数"
    )
    graph_limit: int = Field(
        default=8,
        alias="GRAPH_LIMIT",
        description="エンティティ検索の取得件数（融合後は limit + 4 件まで）"
    )
    query_expansion_enabled: bool = Field(
        default=False,
        alias="QUERY_EXPANSION_ENABLED",
        description="検索前に質問文を関連語で拡張する"
    )
    sibling_expansion_enabled: bool = Field(
        default=False,
        alias="SIBLING_EXPANSION_ENABLED",
        description="検索結果と同じセクションの他チャンクを候補に足す"
    )
    sibling_max_total: int = Field(
        default=15,
        alias="SIBLING_MAX_TOTAL",
        description="兄弟展開後の候補の上限件数"
    )

    # リランキング
    rerank_model: str = Field(
        default="cross-encoder/mmarco-mMiniLMv2-L12-H384-v1",
        alias="RERANK_MODEL",
        description="Cross-Encoderモデル名（多言語対応）"
    )
    rerank_top_n: int = Field(
        default=8,
        alias="RERANK_TOP_N",
        description="リランク後に残す件数"
    )
    rerank_batch_size: int = Field(
        default=8,
        alias="RERANK_BATCH_SIZE",
        description="Cross-Encoderバッチサイズ"
    )

    # 信頼度（使用チャンクの平均類似度で判定）
    confidence_high: float = Field(
        default=0.8,
        alias="CONFIDENCE_HIGH",
        description="これを超えたら high"
    )
    confidence_medium: float = Field(
        default=0.6,
        alias="CONFIDENCE_MEDIUM",
        description="これを超えたら medium（それ以外は low）"
    )

    # 文書パース
    parser_provider: str = Field(
        default="local",
        alias="PARSER_PROVIDER",
        description="文書パーサ（local または llamaparse）"
    )
    llamaparse_api_key: str = Field(
        default="",
        alias="LLAMAPARSE_API_KEY",
        description="LlamaParse APIキー"
    )
    llamaparse_base_url: str = Field(
        default="https://api.cloud.llamaindex.ai/api/parsing",
        alias="LLAMAPARSE_BASE_URL",
        description="LlamaParse APIのベースURL"
    )
    parse_poll_interval_sec: float = Field(
        default=5.0,
        alias="PARSE_POLL_INTERVAL_SEC",
        description="パースジョブのポーリング間隔（秒）"
    )
    parse_max_polls: int = Field(
        default=120,
        alias="PARSE_MAX_POLLS",
        description="ポーリング回数の上限（5秒×120回=10分）"
    )

    # リトライ（指数バックオフ+ジッター）
    retry_max_attempts: int = Field(
        default=3,
        alias="RETRY_MAX_ATTEMPTS",
        description="一時的な外部エラーの最大試行回数"
    )
    retry_base_delay_sec: float = Field(
        default=2.0,
        alias="RETRY_BASE_DELAY_SEC",
        description="リトライの基本待機時間（試行ごとに倍）"
    )

    # キャッシュ
    context_cache_ttl_sec: int = Field(
        default=3600,
        alias="CONTEXT_CACHE_TTL_SEC",
        description="長文コンテキストキャッシュのTTL（秒）"
    )
    context_cache_safety_margin_sec: int = Field(
        default=300,
        alias="CONTEXT_CACHE_SAFETY_MARGIN_SEC",
        description="期限切れ直前のハンドルを使わないための余裕（秒）"
    )
    full_text_cache_ttl_sec: int = Field(
        default=1800,
        alias="FULL_TEXT_CACHE_TTL_SEC",
        description="組み立て済み全文テキストの鮮度（秒）"
    )

    # Ollama設定（環境変数名を明示的に指定して事故防止）
    ollama_base_url: str = Field(
        default="http://localhost:11434",
        alias="OLLAMA_BASE_URL",
        description="Ollama APIのベースURL"
    )
    ollama_model: str = Field(
        default="llama3",
        alias="OLLAMA_MODEL",
        description="使用するOllamaモデル名"
    )
    ollama_timeout_sec: int = Field(
        default=120,
        alias="OLLAMA_TIMEOUT_SEC",
        description="Ollama API呼び出しのタイムアウト秒数"
    )

    # Gemini API設定
    gemini_api_key: str = Field(
        default="",
        alias="GEMINI_API_KEY",
        description="Gemini APIキー"
    )
    gemini_model: str = Field(
        default="gemini-1.5-flash-002",
        alias="GEMINI_MODEL",
        description="使用するGeminiモデル名（コンテキストキャッシュ対応のバージョン固定モデル）"
    )
    gemini_timeout_sec: int = Field(
        default=120,
        alias="GEMINI_TIMEOUT_SEC",
        description="Gemini API呼び出しのタイムアウト秒数"
    )

    # 生成パラメータ
    answer_temperature: float = Field(
        default=0.3,
        alias="ANSWER_TEMPERATURE",
        description="回答生成の temperature"
    )
    answer_max_tokens: int = Field(
        default=4096,
        alias="ANSWER_MAX_TOKENS",
        description="回答生成の最大出力トークン数"
    )

    # LLMプロバイダー選択
    llm_provider: str = Field(
        default="ollama",
        alias="LLM_PROVIDER",
        description="LLMプロバイダー（ollama または gemini）"
    )

    # Pydantic v2の設定（Configクラスの代わりにmodel_configを使用）
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,  # Fieldのaliasとフィールド名の両方で読み込み可能
        extra="ignore"
    )


# グローバル設定インスタンス
settings = Settings()

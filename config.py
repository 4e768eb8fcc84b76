import os

class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "change-this-in-production")
    TESTING = os.environ.get("TESTING", "False").lower() == "true"

    # Remote document store
    # Use DATABASE_URL if provided (Heroku), otherwise construct from individual vars
    if os.getenv('DATABASE_URL'):
        raw_url = os.environ.get("DATABASE_URL")
        # Heroku may provide postgres://; SQLAlchemy expects postgresql+psycopg2://
        if raw_url.startswith("postgres://"):
            raw_url = raw_url.replace("postgres://", "postgresql+psycopg2://", 1)
        elif raw_url.startswith("postgresql://"):
            raw_url = raw_url.replace("postgresql://", "postgresql+psycopg2://", 1)
        SQLALCHEMY_DATABASE_URI = raw_url
    elif os.environ.get("DB_HOST"):
        DB_HOST = os.environ.get("DB_HOST")
        DB_PORT = os.environ.get("DB_PORT", "3306")
        DB_NAME = os.environ.get("DB_NAME", "volunteer_roster")
        DB_USER = os.environ.get("DB_USER", "roster")
        # Do not hard-code passwords; require via environment
        DB_PASSWORD = os.environ.get("DB_PASSWORD", "")

        # URL-encode user and password to safely handle special characters (e.g., ! @ : / ? #)
        from urllib.parse import quote_plus
        enc_user = quote_plus(DB_USER)
        enc_password = quote_plus(DB_PASSWORD)

        SQLALCHEMY_DATABASE_URI = (
            f"mysql+pymysql://{enc_user}:{enc_password}@{DB_HOST}:{DB_PORT}/{DB_NAME}?charset=utf8mb4"
        )
    else:
        # Local SQLite file, created under the Flask instance folder
        SQLALCHEMY_DATABASE_URI = "sqlite:///volunteer_roster.sqlite3"
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # CSRF configuration
    WTF_CSRF_ENABLED = os.environ.get("WTF_CSRF_ENABLED", "True").lower() == "true"
    WTF_CSRF_TIME_LIMIT = int(os.environ.get("WTF_CSRF_TIME_LIMIT", 3600))  # 1 hour

    # ==========================
    # Roster sync tuning
    # ==========================
    # Ids carrying this prefix were minted locally after a failed create and
    # are never sent to the remote store.
    LOCAL_ID_PREFIX = os.environ.get("LOCAL_ID_PREFIX", "local_")

    # A queued write is dropped (and logged) after this many failed deliveries.
    WRITE_RETRY_LIMIT = int(os.environ.get("WRITE_RETRY_LIMIT", "5"))

    # Interval for the background job that retries pending writes. 0 disables it.
    WRITE_QUEUE_FLUSH_SECONDS = int(os.environ.get("WRITE_QUEUE_FLUSH_SECONDS", "30"))

    # Defaults for the "Create New Project" form
    DEFAULT_START_HOUR = int(os.environ.get("DEFAULT_START_HOUR", "9"))
    DEFAULT_END_HOUR = int(os.environ.get("DEFAULT_END_HOUR", "17"))

import os

base_dir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
db_path = os.path.join(base_dir, "quotations.db")

class Config:
    SECRET_KEY = "dev-secret-key"
    SQLALCHEMY_DATABASE_URI = f"sqlite:///{db_path}"
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # 見積の有効期限（日数）
    DEFAULT_VALIDITY_DAYS = 30
    DEFAULT_CURRENCY = "USD"
    # 通貨の最小単位（最終段で一度だけ丸める）
    CURRENCY_QUANTUM = "0.01"
    DOCUMENT_NUMBER_PREFIX = "QT"

    # 承認判定のバージョン競合時の再試行回数
    APPROVAL_DECISION_RETRIES = 3
    ADMIN_ROLE = "admin"

    # 承認のエスカレーションができるロール
    ESCALATION_ROLES = ("manager", "admin")

from app.backend.src.core.config import get_settings
from app.backend.src.db import build_engine
from app.backend.src.models import Base


def init_db():
    settings = get_settings()
    engine = build_engine(settings.database_url)
    print(f"Connecting to {engine.url.render_as_string(hide_password=True)}")
    Base.metadata.create_all(bind=engine)
    print("Tables created successfully!")


if __name__ == "__main__":
    init_db()

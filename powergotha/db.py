from sqlalchemy import create_engine, select
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session, sessionmaker
from pathlib import Path
from . import config
from .models import Base, Role, DEFAULT_ROLES


def make_engine(url: str):
    parsed = make_url(url)
    connect_args = {}
    if parsed.get_backend_name() == "sqlite":
        connect_args["check_same_thread"] = False
        if parsed.database and parsed.database != ":memory:":
            Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)
    return create_engine(url, connect_args=connect_args, pool_pre_ping=True)


engine = make_engine(config.DATABASE_URL)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


def init_db(bind=None):
    bind = bind or engine
    Base.metadata.create_all(bind=bind)
    with Session(bind) as db:
        seed_roles(db)


def seed_roles(db: Session):
    existing = set(db.scalars(select(Role.name)))
    for name in DEFAULT_ROLES:
        if name not in existing:
            db.add(Role(name=name))
    db.commit()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

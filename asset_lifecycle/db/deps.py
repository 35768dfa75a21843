from collections.abc import Generator

from .session import SessionLocalAsset


def get_asset_db() -> Generator:
    db = SessionLocalAsset()
    try:
        yield db
    finally:
        db.close()

import pytest

from scraper import Config


@pytest.fixture
def cfg(tmp_path) -> Config:
    return Config(
        marketplace_base="https://www.amazon.ca",
        user_data_dir=str(tmp_path / "profile"),
        nav_timeout_ms=45000,
        title_wait_ms=5000,
        delay_ms=0,
        pause_after_last=True,
        output_db=str(tmp_path / "tracker.sqlite"),
    )

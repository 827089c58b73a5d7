from src.core.config import Settings


def test_pixel_budget_applies_safety_margin():
    settings = Settings(MAX_MEGAPIXELS=5_000_000, PIXEL_SAFETY_MARGIN=0.9)

    assert settings.pixel_budget == 4_500_000


def test_defaults_match_batch_limits():
    settings = Settings(_env_file=None)

    assert settings.CONCURRENCY_LIMIT == 3
    assert settings.CHUNK_SIZE == 10
    assert settings.MAX_RETRIES == 3
    assert settings.SESSION_TTL_SECONDS == 3600
    assert "DEBUG" not in Settings.model_fields

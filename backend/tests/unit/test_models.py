"""Tests for model mapping options."""
from sqlalchemy import inspect

from creditledger.models import Account


def test_account_relationships_never_load_implicitly() -> None:
    """Test that related rows are fetched by explicit queries, never by attribute access."""
    strategies = {relationship.key: relationship.lazy for relationship in inspect(Account).relationships}

    assert strategies == {
        "transactions": "raise",
        "usage_periods": "raise",
        "auto_top_up_config": "raise",
    }

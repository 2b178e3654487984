from unittest.mock import MagicMock

import pytest


@pytest.fixture
def session():
    """Stands in for a requests.Session; set post.return_value per test."""
    session = MagicMock()
    session.__enter__.return_value = session
    return session

import json
from unittest.mock import MagicMock


def make_response(status_code, body=""):
    """A stand-in for requests.Response with the attributes the clients read."""
    resp = MagicMock()
    resp.status_code = status_code
    resp.text = body
    resp.content = body.encode("utf-8")
    resp.json.side_effect = lambda: json.loads(body)
    return resp

import json


def parse_data_stream(body):
    """Split a data-stream body into (code, value) pairs."""
    parts = []
    for line in body.splitlines():
        if not line:
            continue
        code, _, payload = line.partition(":")
        parts.append((code, json.loads(payload)))
    return parts


def stream_codes(body):
    return [code for code, _ in parse_data_stream(body)]


def stream_text(body):
    """Concatenated answer text of a data-stream body."""
    return "".join(value for code, value in parse_data_stream(body) if code == "0")


def assert_stream_part(body, code, **expected_data):
    """
    Assert that a part with the given code and expected fields exists in the body.
    Checks all occurrences of the code.
    """
    for part_code, value in parse_data_stream(body):
        if part_code != code or not isinstance(value, dict):
            continue
        if all(key in value and value[key] == expected for key, expected in expected_data.items()):
            return value

    assert False, f"No '{code}' part found with all expected data: {expected_data} in stream body:\n{body}"


def assert_error_code(response, status_code, code):
    """Assert the JSON error envelope of a refused request."""
    assert response.status_code == status_code, response.text
    error = response.json()["error"]
    assert error["code"] == code, error
    return error

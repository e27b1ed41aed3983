import json

from protocol.errors import InvalidFormat


def pack_json(obj):
    """
    Serialize a JSON object compactly with stable key order.
    """
    return json.dumps(obj, separators=(",", ":"), sort_keys=True)


def unpack_json(data):
    """
    Parse JSON text (str or bytes) that must decode to an object.
    """
    if isinstance(data, (bytes, bytearray)):
        try:
            data = data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise InvalidFormat(f"payload is not UTF-8: {e}") from e
    try:
        obj = json.loads(data)
    except (TypeError, ValueError) as e:
        raise InvalidFormat(f"payload is not JSON: {e}") from e
    if not isinstance(obj, dict):
        raise InvalidFormat("payload must be a JSON object")
    return obj

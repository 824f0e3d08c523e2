import time
import logging
import requests
from flask import current_app


class PinningError(Exception):
    pass


def pin_json_to_ipfs(content, name=None):
    """Pin a JSON document to IPFS through Pinata and return its ipfs:// URI.

    Raises PinningError when Pinata is not configured, unreachable, times out
    or answers with anything but a pin hash. Never retries.
    """
    pinata_jwt = current_app.config.get('PINATA_JWT')
    if not pinata_jwt:
        raise PinningError('PINATA_JWT not configured')

    if name is None:
        name = f"qr-claim-{int(time.time() * 1000)}.json"

    try:
        response = requests.post(
            current_app.config['PINATA_PIN_JSON_URL'],
            headers={
                'Content-Type': 'application/json',
                'Authorization': f'Bearer {pinata_jwt}',
            },
            json={
                'pinataContent': content,
                'pinataMetadata': {'name': name},
            },
            timeout=current_app.config['EXTERNAL_TIMEOUT_SECONDS'],
        )
    except requests.RequestException as e:
        logging.error(f"Pinata request failed: {e}")
        raise PinningError(f"Failed to pin to IPFS: {e}") from e

    if not response.ok:
        logging.error(f"Pinata error {response.status_code}: {response.text}")
        raise PinningError(f"Failed to pin to IPFS: {response.text}")

    try:
        ipfs_hash = response.json()['IpfsHash']
    except (ValueError, KeyError, TypeError) as e:
        raise PinningError('Pinata response missing IpfsHash') from e

    return f"ipfs://{ipfs_hash}"

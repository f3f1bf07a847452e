""" # noqa: D400
init_device.py
--------------
Runs the OSCU device initialization handshake (selectInitOsdcInfo) against KRA.

KRA answers with the communication key (cmcKey) that every other OSCU call
must carry in its `cmcKey` header. Export it as KRA_CMC_KEY afterwards.

Usage:
    python init_device.py

Required environment variables:
    KRA_CONSUMER_KEY     - OAuth2 consumer key for the selected environment
    KRA_CONSUMER_SECRET  - OAuth2 consumer secret
    KRA_TIN              - Taxpayer PIN
    DEVICE_SERIAL        - Device serial number registered with KRA

Optional:
    KRA_ENV (sbx|prod, default sbx), KRA_BHF_ID (default 00), KRA_TOKEN_CACHE_FILE
"""

import json
import logging
import os
import sys

from kra_etims_oscu.client import KRAeTIMSClient
from kra_etims_oscu.config import EtimsConfig
from kra_etims_oscu.exceptions import KRAeTIMSError


def run_init_device() -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    print("=" * 60)
    print(" KRA eTIMS OSCU - Device Initialization Handshake")
    print("=" * 60)

    try:
        config = EtimsConfig.from_env()
    except KRAeTIMSError as exc:
        print(f"[ERROR] {exc}")
        return 2

    device_serial = os.getenv("DEVICE_SERIAL", "").strip()
    if not device_serial:
        print("[ERROR] Missing required environment variable: DEVICE_SERIAL")
        return 2

    print(f"\n[INFO] Environment: {config.env} ({config.active_urls.base_url})")
    print(f"[INFO] TIN {config.oscu.tin}, branch {config.oscu.bhf_id}\n")

    with KRAeTIMSClient(config) as client:
        try:
            initialized = client.initialize({
                "tin": config.oscu.tin,
                "bhfId": config.oscu.bhf_id,
                "dvcSrlNo": device_serial,
            })
        except KRAeTIMSError as exc:
            print("[ERROR] Handshake failed:")
            print(json.dumps(exc.to_dict(), indent=2, default=str))
            return 1

    cmc_key = initialized.config.oscu.cmc_key
    print(f"[VERIFIED] cmcKey retrieved: {cmc_key[:8]}…")
    print(f"\nexport KRA_CMC_KEY={cmc_key}")
    print("\n" + "=" * 60)
    return 0


if __name__ == "__main__":
    sys.exit(run_init_device())

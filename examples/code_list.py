from datetime import datetime, timedelta

from kra_etims_oscu.client import KRAeTIMSClient
from kra_etims_oscu.config import Credentials, EtimsConfig, OscuIdentity
from kra_etims_oscu.exceptions import KRAeTIMSApiError, KRAeTIMSValidationError

config = EtimsConfig(
    env="sbx",
    auth={"sbx": Credentials(consumer_key="YOUR_CONSUMER_KEY", consumer_secret="YOUR_CONSUMER_SECRET")},
    oscu=OscuIdentity(tin="P051234567X", bhf_id="00", cmc_key="YOUR_CMC_KEY"),
)

last_week = (datetime.now() - timedelta(days=7)).strftime("%Y%m%d%H%M%S")

with KRAeTIMSClient(config) as client:
    try:
        response = client.select_code_list({"lastReqDt": last_week})
        for cls in response.get("data", {}).get("clsList", []):
            print(f"{cls['cdCls']}: {cls['cdClsNm']}")
    except KRAeTIMSValidationError as e:
        print("Fix the payload:", e.errors)
    except KRAeTIMSApiError as e:
        print(f"KRA rejected the request [{e.error_code}]: {e.message}")

import os
import sys
import time
import uuid

import requests

base_url = os.getenv("CAMPAIGNS_BASE_URL", "http://localhost:8000").rstrip("/")
user_id = os.getenv("CAMPAIGNS_USER_ID", "smoke-operator")

headers = {"X-User-Id": user_id}


def main() -> int:
    suffix = uuid.uuid4().hex[:6]
    customer_res = requests.post(
        f"{base_url}/customers",
        json={"external_id": f"smoke-{suffix}", "name": "Smoke Test", "email": f"smoke-{suffix}@example.com"},
        timeout=15,
    )
    customer_res.raise_for_status()

    order_res = requests.post(
        f"{base_url}/customers/orders",
        json={"external_id": f"smoke-order-{suffix}", "customer_external_id": f"smoke-{suffix}", "amount": "150.00"},
        timeout=15,
    )
    order_res.raise_for_status()

    segment_res = requests.post(
        f"{base_url}/segments",
        headers=headers,
        json={
            "name": f"Smoke buyers {suffix}",
            "rules": {"field": "totalSpend", "operator": ">=", "value": 100},
        },
        timeout=15,
    )
    segment_res.raise_for_status()
    segment = segment_res.json()

    campaign_res = requests.post(
        f"{base_url}/campaigns",
        headers=headers,
        json={
            "segment_id": segment["id"],
            "name": f"Smoke campaign {suffix}",
            "message_template": "Hi {{name}}, thanks for shopping with us!",
        },
        timeout=60,
    )
    campaign_res.raise_for_status()
    campaign = campaign_res.json()

    for _ in range(10):
        detail_res = requests.get(f"{base_url}/campaigns/{campaign['id']}", headers=headers, timeout=15)
        detail_res.raise_for_status()
        detail = detail_res.json()
        if detail["progress"]["is_complete"]:
            break
        time.sleep(1)

    print(f"Segment audience: {segment['audience_size']}")
    print(f"Campaign status: {detail['status']} ({detail['sent_count']} sent, {detail['failed_count']} failed)")
    print(f"Summary: {detail['ai_summary']}")
    return 0


if __name__ == "__main__":
    try:
        raise SystemExit(main())
    except requests.RequestException as exc:
        print(f"Campaign API probe failed: {exc}", file=sys.stderr)
        raise SystemExit(1)

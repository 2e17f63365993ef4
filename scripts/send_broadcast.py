"""Send an operator announcement through the notification API."""

import argparse

import httpx


def main() -> None:
    parser = argparse.ArgumentParser(description="Broadcast (or direct-send) an announcement.")
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--token", required=True, help="Operator access token")
    parser.add_argument("--title", required=True)
    parser.add_argument("--body", required=True)
    parser.add_argument("--type", default="GENERAL")
    parser.add_argument("--user-id", action="append", dest="user_ids", help="Repeat to target specific users")
    args = parser.parse_args()

    payload = {"title": args.title, "body": args.body, "type": args.type}
    path = "/admin/notifications/broadcast"
    if args.user_ids:
        payload["user_ids"] = args.user_ids
        path = "/admin/notifications/send"

    resp = httpx.post(
        f"{args.base_url.rstrip('/')}{path}",
        json=payload,
        headers={"Authorization": f"Bearer {args.token}"},
        timeout=60.0,
    )
    resp.raise_for_status()
    result = resp.json()
    print(f"records={result['records']} sent={result['sent']} failed={result['failed']}")
    if result.get("unknown_recipients"):
        print(f"unknown_recipients={','.join(result['unknown_recipients'])}")


if __name__ == "__main__":
    main()

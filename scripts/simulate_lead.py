"""
Drive a running LeadFlow instance from the outside.

Usage:
    python scripts/simulate_lead.py new_lead --lead <uuid>
    python scripts/simulate_lead.py sms_reply --client <uuid> --phone "+15125559876" --body "what's the price?"
    python scripts/simulate_lead.py operator --lead <uuid> --body "Hi, following up"
    python scripts/simulate_lead.py conversation --lead <uuid>
"""
import argparse
import asyncio
import logging

import httpx

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

BASE_URL = "http://localhost:8000"


async def simulate_event(event_type: str, lead_id: str, **fields):
    """Post a domain event to the event ingress."""
    payload = {"event_type": event_type, "lead_id": lead_id, **fields}
    async with httpx.AsyncClient(timeout=30) as client:
        resp = await client.post(f"{BASE_URL}/api/v1/events", json=payload)
        logger.info("Event response: %s %s", resp.status_code, resp.text)
        return resp


async def simulate_sms_reply(client_id: str, phone: str, body: str, to_phone: str):
    """Simulate an inbound SMS (Twilio webhook format)."""
    payload = {
        "From": phone,
        "To": to_phone,
        "Body": body,
        "MessageSid": "SM_TEST_00000000000000000000000000",
        "NumMedia": "0",
    }
    async with httpx.AsyncClient(timeout=30) as client:
        resp = await client.post(
            f"{BASE_URL}/api/v1/webhook/twilio/sms/{client_id}",
            data=payload,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        logger.info("SMS reply response: %s %s", resp.status_code, resp.text)
        return resp


async def send_operator_message(lead_id: str, body: str, channel: str):
    async with httpx.AsyncClient(timeout=30) as client:
        resp = await client.post(
            f"{BASE_URL}/api/v1/leads/{lead_id}/messages",
            json={"message": body, "channel": channel},
        )
        logger.info("Operator send response: %s %s", resp.status_code, resp.text)
        return resp


async def show_conversation(lead_id: str):
    async with httpx.AsyncClient(timeout=30) as client:
        resp = await client.get(f"{BASE_URL}/api/v1/leads/{lead_id}/conversation")
        resp.raise_for_status()
        for entry in resp.json()["messages"]:
            logger.info(
                "#%d %s/%s [%s] %s",
                entry["sequence"], entry["sender"], entry["channel"],
                entry["delivery_status"], entry["message"],
            )
        return resp


async def main():
    parser = argparse.ArgumentParser(description="Simulate lead activity")
    parser.add_argument("action", choices=["new_lead", "status_change", "sms_reply", "operator", "conversation"])
    parser.add_argument("--lead", default="")
    parser.add_argument("--client", default="")
    parser.add_argument("--phone", default="+15125559876")
    parser.add_argument("--body", default="what's the price?")
    parser.add_argument("--to-phone", default="+15125550199")
    parser.add_argument("--channel", default="auto")
    parser.add_argument("--status", default="interested")
    args = parser.parse_args()

    if args.action == "new_lead":
        await simulate_event("new_lead", args.lead)
    elif args.action == "status_change":
        await simulate_event("status_change", args.lead, new_status=args.status)
    elif args.action == "sms_reply":
        await simulate_sms_reply(args.client, args.phone, args.body, args.to_phone)
    elif args.action == "operator":
        await send_operator_message(args.lead, args.body, args.channel)
    elif args.action == "conversation":
        await show_conversation(args.lead)


if __name__ == "__main__":
    asyncio.run(main())

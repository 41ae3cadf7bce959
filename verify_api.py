
import asyncio
import uuid
import httpx

# Registering the admin below needs the server started with ALLOW_ADMIN_SIGNUP=true
BASE_URL = "http://localhost:8000/api"

async def main():
    suffix = uuid.uuid4().hex[:6]
    async with httpx.AsyncClient() as client:
        print("Registering Alice...")
        resp = await client.post(f"{BASE_URL}/users", json={"name": "Alice", "email": f"alice-{suffix}@example.com"})
        print(resp.json())
        assert resp.status_code == 201
        alice = resp.json()["user"]

        print("\nRegistering Bob...")
        resp = await client.post(f"{BASE_URL}/users", json={"name": "Bob", "email": f"bob-{suffix}@example.com"})
        assert resp.status_code == 201
        bob = resp.json()["user"]

        print("\nRegistering Admin...")
        resp = await client.post(f"{BASE_URL}/users", json={"name": "Admin", "email": f"admin-{suffix}@example.com", "role": "admin"})
        assert resp.status_code == 201
        admin = resp.json()["user"]

        as_alice = {"X-User-Id": alice["id"]}
        as_admin = {"X-User-Id": admin["id"]}

        print(f"\nTransferring 30 from Alice to Bob...")
        resp = await client.post(f"{BASE_URL}/transfers", headers=as_alice, json={
            "receiver_email": bob["email"],
            "amount": 30.00,
            "description": "Lunch money",
        })
        print(resp.json())
        assert resp.status_code == 201
        assert float(resp.json()["new_balance"]) == 4970.0

        print("\nAttempting Overdraft Transfer (10000 from Alice)...")
        resp = await client.post(f"{BASE_URL}/transfers", headers=as_alice, json={
            "receiver_email": bob["email"],
            "amount": 10000.00,
        })
        print(resp.json())
        assert resp.status_code == 400

        print("\nApplying for a 2000 loan...")
        resp = await client.post(f"{BASE_URL}/loans", headers=as_alice, json={
            "amount": 2000, "monthly_income": 3000, "reason": "Laptop",
        })
        print(resp.json())
        assert resp.status_code == 201
        loan_id = resp.json()["id"]

        print("\nApproving loan...")
        resp = await client.post(f"{BASE_URL}/admin/loans/{loan_id}/approve", headers=as_admin)
        print(resp.json())
        assert resp.json()["status"] == "disbursed"

        print("\nRepaying loan in full...")
        resp = await client.post(f"{BASE_URL}/loans/{loan_id}/payments", headers=as_alice, json={"amount": 2000})
        print(resp.json())
        assert resp.json()["status"] == "closed"

        print("\nChecking Alice's Balance (Expected 4970)...")
        resp = await client.get(f"{BASE_URL}/account", headers=as_alice)
        print(resp.json())
        assert float(resp.json()["balance"]) == 4970.0

        print("\nVerifying ledger for Alice...")
        resp = await client.get(f"{BASE_URL}/transactions", headers=as_alice)
        entries = resp.json()["transactions"]
        print(f"Found {len(entries)} entries")
        for entry in entries:
            print(f" - {entry['reference']} {entry['type']} {entry['amount']}")

        assert len(entries) == 3 # Transfer + Disbursement + Payment

if __name__ == "__main__":
    asyncio.run(main())

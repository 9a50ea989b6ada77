#!/usr/bin/env python3
"""
Identra Synthetic Contact Generator

Drives a running Identra Reconciler with overlapping identities:
1. Each synthetic person owns a few emails and phone numbers
2. Requests submit random (email, phone) pairs of one person
3. Some requests carry only an email or only a phone
4. People are introduced piecemeal, so later requests bridge clusters
5. **Optional concurrency to exercise the reconciliation locks**

After the run, every person must resolve to exactly one primary contact
whose aliases cover everything submitted for them.
"""

import random
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional, Tuple

import requests

# Configuration
IDENTIFY_API_URL = 'http://localhost:8000'

FIRST_NAMES = ['marty', 'doc', 'lorraine', 'george', 'biff', 'jennifer', 'clara', 'einstein']
DOMAINS = ['hillvalley.edu', 'example.com', 'mail.test']

# How people spread their contact details
PERSONAS = {
    'single_channel': {'count': 20, 'emails': 1, 'phones': 1, 'partial_rate': 0.1},
    'multi_email': {'count': 15, 'emails': 3, 'phones': 1, 'partial_rate': 0.2},
    'multi_phone': {'count': 15, 'emails': 1, 'phones': 3, 'partial_rate': 0.2},
    'sprawling': {'count': 10, 'emails': 3, 'phones': 3, 'partial_rate': 0.3},
}


class SyntheticContactGenerator:
    def __init__(self, seed: int = None):
        self.rng = random.Random(seed)
        self.people = self._generate_people()
        self.requests_sent = 0
        self.failures = 0

    def _generate_people(self) -> List[Dict]:
        """Generate people with persona-shaped aliases"""
        people = []
        person_id = 1000

        for persona, config in PERSONAS.items():
            for _ in range(config['count']):
                name = self.rng.choice(FIRST_NAMES)
                emails = [
                    f"{name}.{person_id}.{i}@{self.rng.choice(DOMAINS)}"
                    for i in range(config['emails'])
                ]
                phones = [
                    f"{self.rng.randint(200, 999)}{person_id}{i}"
                    for i in range(config['phones'])
                ]
                people.append({
                    'person_id': person_id,
                    'persona': persona,
                    'emails': emails,
                    'phones': phones,
                    'partial_rate': config['partial_rate']
                })
                person_id += 1

        return people

    def _check_api(self) -> bool:
        """Check if the reconciler is up"""
        max_retries = 5
        for attempt in range(max_retries):
            try:
                response = requests.get(f"{IDENTIFY_API_URL}/health", timeout=3)
                if response.status_code == 200 and response.json().get('status') == 'healthy':
                    return True
            except requests.RequestException:
                pass
            if attempt < max_retries - 1:
                print(f"⏳ Waiting for Identra API (attempt {attempt + 1}/{max_retries})...")
                time.sleep(2)
        return False

    def _pick_pair(self, person: Dict) -> Tuple[Optional[str], Optional[str]]:
        email = self.rng.choice(person['emails'])
        phone = self.rng.choice(person['phones'])
        if self.rng.random() < person['partial_rate']:
            if self.rng.random() < 0.5:
                return email, None
            return None, phone
        return email, phone

    def identify(self, email: Optional[str], phone: Optional[str]) -> Optional[Dict]:
        """POST one pair; None on failure"""
        self.requests_sent += 1
        try:
            response = requests.post(
                f"{IDENTIFY_API_URL}/identify",
                json={'email': email, 'phoneNumber': phone},
                timeout=10
            )
        except requests.RequestException as e:
            self.failures += 1
            print(f"⚠️  Request failed: {e}")
            return None

        if response.status_code != 200:
            self.failures += 1
            print(f"⚠️  {response.status_code} for ({email}, {phone}): {response.text}")
            return None
        return response.json()['contact']

    def generate(self, rounds: int, concurrency: int = 1):
        """Send `rounds` pairs per person, optionally from several threads"""
        pairs = []
        for person in self.people:
            for _ in range(rounds):
                pairs.append(self._pick_pair(person))
        self.rng.shuffle(pairs)

        print(f"🚀 Sending {len(pairs)} requests for {len(self.people)} people "
              f"(concurrency={concurrency})")

        started = time.time()
        if concurrency > 1:
            with ThreadPoolExecutor(max_workers=concurrency) as pool:
                list(pool.map(lambda pair: self.identify(*pair), pairs))
        else:
            for i, pair in enumerate(pairs):
                self.identify(*pair)
                if (i + 1) % 100 == 0:
                    print(f"  Sent {i + 1}/{len(pairs)} requests...")

        elapsed = time.time() - started
        print(f"✅ Sent {len(pairs)} requests in {elapsed:.1f}s ({self.failures} failures)")

    def verify(self) -> int:
        """
        Submit every alias of every person once more and check that they
        all land on the same primary. Returns the number of broken people.
        """
        broken = 0
        for person in self.people:
            primaries = set()
            final = None
            for email in person['emails']:
                for phone in person['phones']:
                    contact = self.identify(email, phone)
                    if contact:
                        primaries.add(contact['primaryContactId'])
                        final = contact

            if len(primaries) != 1 or final is None:
                broken += 1
                print(f"❌ Person {person['person_id']} resolved to primaries {sorted(primaries)}")
                continue

            missing = (set(person['emails']) - set(final['emails'])) | \
                      (set(person['phones']) - set(final['phoneNumbers']))
            if missing:
                broken += 1
                print(f"❌ Person {person['person_id']} is missing aliases {sorted(missing)}")

        return broken


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description='Drive Identra with synthetic overlapping contacts')
    parser.add_argument('--rounds', type=int, default=4, help='Requests per person')
    parser.add_argument('--concurrency', type=int, default=1, help='Parallel request threads')
    parser.add_argument('--seed', type=int, default=None, help='Random seed')
    parser.add_argument('--people', type=int, default=None, help='Limit number of people')
    parser.add_argument('--dry-run', action='store_true', help='Print the plan without sending')
    args = parser.parse_args()

    generator = SyntheticContactGenerator(seed=args.seed)
    if args.people:
        generator.people = generator.people[:args.people]
        print(f"🎯 Limited to {args.people} people")

    if args.dry_run:
        print(f"People: {len(generator.people)}")
        print(f"Requests: ~{len(generator.people) * args.rounds}")
        for person in generator.people[:3]:
            print(f"  {person['person_id']} ({person['persona']}): {person['emails']} {person['phones']}")
        exit(0)

    if not generator._check_api():
        print("❌ Identra API not available at", IDENTIFY_API_URL)
        print("   Start it with: cd src/Identra.Reconciler && python main.py")
        exit(1)

    generator.generate(rounds=args.rounds, concurrency=args.concurrency)

    print()
    print("🔎 Verifying clusters...")
    broken = generator.verify()
    if broken:
        print(f"❌ {broken}/{len(generator.people)} people resolved inconsistently")
        exit(1)
    print(f"✅ All {len(generator.people)} people resolved to a single primary")

"""Pseudonymous patient numbering.

Patient hashes are one-way digests of NHS number and date of birth. For
research export they are replaced by small integers, handed out in
calculate-row order, so episodes for the same patient can be grouped
without exposing the hash itself.
"""

import asyncio
import hashlib


def rehash_patient_hash(patient_hash: str, salt: str) -> str:
    """Second-stage hash of a client-supplied patient hash with the server salt."""
    return hashlib.sha256((patient_hash + salt).encode("utf-8")).hexdigest()


class PatientNumberAssigner:
    """Maps patient hashes to run-scoped integers starting at 1.

    The first sighting of a hash takes the next number; later sightings
    return the same number. A None hash never receives a number, since
    anonymous episodes cannot be grouped. Assignment is serialised by a lock
    so concurrent callers cannot race the counter.
    """

    def __init__(self) -> None:
        self._numbers: dict[str, int] = {}
        self._lock = asyncio.Lock()

    async def assign(self, patient_hash: str | None) -> int | None:
        if not patient_hash:
            return None
        async with self._lock:
            number = self._numbers.get(patient_hash)
            if number is None:
                number = len(self._numbers) + 1
                self._numbers[patient_hash] = number
            return number

    def __len__(self) -> int:
        return len(self._numbers)

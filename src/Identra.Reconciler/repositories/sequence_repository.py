"""
Sequence Repository - Redis counters for contact ids
"""
import redis
import os

from core.errors import IdGenerationFault

CONTACT_SEQUENCE = 'contact_id'

# Raise the counter to ARGV[1] unless it is already there
_RAISE_FLOOR = """
local current = tonumber(redis.call('GET', KEYS[1]) or '0')
local floor = tonumber(ARGV[1])
if current < floor then
    redis.call('SET', KEYS[1], floor)
    return floor
end
return current
"""


class SequenceRepository:
    """
    Id allocator backed by Redis INCR.
    Ids are unique and strictly increasing per sequence name, across processes.
    """

    def __init__(self, host: str = None, port: int = None, client: redis.Redis = None):
        self.client = client or redis.Redis(
            host=host or os.getenv('REDIS_HOST', 'localhost'),
            port=int(port or os.getenv('REDIS_PORT', '6379')),
            db=int(os.getenv('REDIS_DB', '0')),
            decode_responses=True
        )

    def next(self, sequence_name: str) -> int:
        """Allocate the next id of a sequence"""
        try:
            return int(self.client.incr(self._key(sequence_name)))
        except redis.RedisError as e:
            raise IdGenerationFault(f"Failed to generate id for sequence {sequence_name}") from e

    def ensure_floor(self, sequence_name: str, floor: int) -> int:
        """
        Make sure the next id handed out is above `floor`.
        Used at startup so a fresh Redis never reissues ids already stored.
        """
        script = self.client.register_script(_RAISE_FLOOR)
        return int(script(keys=[self._key(sequence_name)], args=[floor]))

    def ping(self):
        self.client.ping()

    @staticmethod
    def _key(sequence_name: str) -> str:
        return f"sequence:{sequence_name}"

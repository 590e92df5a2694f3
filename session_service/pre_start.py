import time

from redis import Redis

from configs import REDIS_HOST, REDIS_PORT
from infrastructure.settings import DEFAULT_MACHINES

redis = Redis(host=REDIS_HOST, port=REDIS_PORT, decode_responses=True)

for machine in DEFAULT_MACHINES:
    machine_id = machine["machine_id"]
    redis.hset(f"machine:{machine_id}", mapping={
        "id": machine_id,
        "code": machine["code"],
        "location": machine["location"],
        "price_per_minute": machine["price_per_minute"],
        "operating_start": machine["operating_start"],
        "operating_end": machine["operating_end"],
        "status": "online",
        "maintenance_interval_minutes": 0,
        "operating_minutes": 0,
        "maintenance_override": 0,
        "last_heartbeat": time.time(),
    })
    redis.delete(f"machine:{machine_id}:owner")
    redis.sadd("machines", machine_id)

redis.set("balance:user-1", 5000)
redis.set("balance:user-2", 500)

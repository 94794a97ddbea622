from .flaky import FlakyBroker
from .kafka import CLUSTER, AIOKafkaAdminClientMock, AIOKafkaConsumerMock, AIOKafkaProducerMock, install_kafka_mocks
from .stores import InMemDedupStore, InMemLockStore

__all__ = [
    "CLUSTER",
    "AIOKafkaAdminClientMock",
    "AIOKafkaConsumerMock",
    "AIOKafkaProducerMock",
    "FlakyBroker",
    "InMemDedupStore",
    "InMemLockStore",
    "install_kafka_mocks",
]

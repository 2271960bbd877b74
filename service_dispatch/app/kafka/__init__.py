"""
Kafka channel of the dispatch pipeline.

- producer: shared KafkaProducer wrapper with confirmed publishes.
- dispatcher: enqueues work items on the processing topic.
- handler: settles one consumed work item (deliver, dead-letter, ack).
- consumer: poll loop with manual offset commits.
- dead_letter: Kafka and local dead-letter sinks.
"""

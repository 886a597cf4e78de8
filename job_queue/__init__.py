"""
Job Queue — delayed delivery on top of a queue with a bounded native delay.

- Gateway: send / receive / delete against SQS (production) or memory (dev)
- Delayer: enqueue decision, poll loop, due / not-due processing
"""

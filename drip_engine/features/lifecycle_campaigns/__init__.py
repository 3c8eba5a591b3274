"""
Lifecycle campaigns feature package.

Segment classification, step sequencing, the email job queue, the
polling worker and one-shot notification delivery live together here
(domain models, repositories, services, jobs and the admin router).
"""

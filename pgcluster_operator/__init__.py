"""
PostgresCluster operator.

Turns a declarative PostgresCluster resource into the child objects it needs
(stateful workloads, services, backup CronJobs, a pgbouncer Deployment) and
drives them to convergence against the Kubernetes API.
"""

__version__ = "0.1.0"

"""Registry Push Reconciler (RPR).

Keeps a Kubernetes Deployment + Service in step with images pushed to a
Docker registry:
 - receives registry push notifications over a webhook
 - reads labels / exposed ports from the pushed image's config blob
 - creates the workload on first push, patches and restarts it afterwards

Every action is written to a small SQLite event log.
"""

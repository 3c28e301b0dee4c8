"""Multi-stage deployment pipeline orchestrator.

This package moves commits through an application's ordered stages:
- Trigger normalization for GitHub webhooks, manual re-runs and chat commands
- Pipeline topology resolution from registered applications
- Deployment records with conditional writes (PostgreSQL or in-memory)
- Approval gates driven by chat decisions
- Stage orchestration with a per-stage deploying mutex
- Outbound notifications and Prometheus metrics
"""

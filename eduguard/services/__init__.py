"""EduGuard services.

- Risk Engine: per-domain threshold detection and flag reconciliation
- Notification Service: templated guardian messages over SMS and email
  with retries and delivery tracking
"""

"""
Engagement Engine - notifications and rewards orchestration

It provides:
- Template rendering (tokenizer, AST, interpreter, alias resolution)
- Automation scheduling (recurring timers and event triggers)
- Rate-limited campaign dispatch through a delivery gateway
- Delivery status tracking from provider webhooks and reconciliation
- Monthly reward drawings with safe gift card disbursement

Account, subscription and contest bookkeeping stay outside this package;
the engine only reads the subscriber view they maintain.
"""

"""
Gateway -- the seam between chat bridges and the agent loop.

- events: InboundMessage / OutboundMessage envelopes
- hooks:  lifecycle hook discovery and dispatch
- run:    GatewayRunner (per-conversation tasks, supersede cancellation)
          and logging setup
"""

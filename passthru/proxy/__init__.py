"""Forwarding core: header policy, header projection and response relay."""

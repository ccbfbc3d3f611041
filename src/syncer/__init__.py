"""
Syncer package — polls Slack channels through the Web API and relays each
new message to a webhook, tracking a per-channel cursor so nothing is
skipped across restarts.

All Slack access goes through ReadOnlySlackClient, which only permits
read methods (history, replies, channel and user info).
"""

from blinker import signal


agent_registered = signal("agent-registered")

agent_unregistered = signal("agent-unregistered")

command_dispatched = signal("command-dispatched")

event_routed = signal("event-routed")

handler_failed = signal("handler-failed")

message_delivered = signal("message-delivered")

from hookrelay.apps.receiver.app import ReceiverSettings, create_app, load_receiver_settings

__all__ = ["ReceiverSettings", "create_app", "load_receiver_settings"]

"""Built-in signals sent by testkit.

Kwargs sent:
    setting_changed          setting (str), value, enter (bool)
    connection_created       connection (DatabaseWrapper)
    test_database_created    alias, test_database_name, keepdb
    test_database_destroyed  alias, test_database_name, keepdb
"""

from dispatch.dispatcher import Signal

# Sent by override_settings on enter and exit; sender is the Settings class
setting_changed = Signal(name="setting_changed")

# Sent when a DatabaseWrapper opens its connection; sender is the wrapper class
connection_created = Signal(name="connection_created")

# Sent by the creation backends; sender is the creation class
test_database_created = Signal(name="test_database_created")
test_database_destroyed = Signal(name="test_database_destroyed")

"""OpenReserve: event publishing and capacity-bounded reservations."""

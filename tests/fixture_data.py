"""Credentials shared by the test modules."""

# satisfies every complexity rule
STRONG_PASSWORD = "Str0ng#Pass"
NEW_PASSWORD = "N3w#Passw0rd"

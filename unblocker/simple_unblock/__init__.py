"""Anonymous, OTP-verified self-service unblock ("simple mode")."""

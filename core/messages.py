"""
core/messages.py -- User-facing message catalogue.

Every string a user can see after a sign-in attempt or a policy redirect is
defined here once. Web templates, flash messages and JSON error bodies all
import from this module so the wording never drifts between surfaces.
"""

# Sign-in
INVALID_LOGIN = "Invalid Login or password."
ACCOUNT_BLOCKED = "Your account has been blocked."
ACCOUNT_LOCKED = "Your account is locked."
INVALID_OTP = "Invalid two-factor code."
TWO_FACTOR_REQUIRED = "Two-factor authentication code required."
ALREADY_SIGNED_IN = "You are already signed in."
UNAUTHENTICATED = "You need to sign in or sign up before continuing."
SIGNED_IN = "Signed in successfully."
SIGNED_OUT = "Signed out successfully."
SIGNED_UP = "Welcome! You have signed up successfully."
SIGNUP_DISABLED = "Sign-up is disabled."
NOT_PROVISIONED = "Your account has not been provisioned. Contact an admin."
OAUTH_FAILED = "Could not authenticate you from the external provider."
PASSWORD_AUTH_DISABLED = "Password authentication is disabled."

# Passwords
INITIAL_PASSWORD = "Please create a password for your new account."
PASSWORD_UPDATED_NOT_ACTIVE = "Your password has been changed successfully."
PASSWORD_RESET_SENT = (
    "If your email address exists in our database, you will receive a password "
    "recovery link at your email address in a few minutes."
)
RESET_TOKEN_INVALID = "Reset password token is invalid"
RESET_TOKEN_EXPIRED = "Reset password token has expired, please request a new one"
PASSWORD_CHANGED = "Password successfully changed"
PASSWORD_EXPIRED = "Your password expired. Please set a new password."
CURRENT_PASSWORD_INVALID = "You must provide a valid current password"
PASSWORD_CONFIRMATION_MISMATCH = "Password confirmation doesn't match Password"
PASSWORD_TOO_SHORT = "Password is too short (minimum is {minimum} characters)"
PASSWORD_UNCHANGED = "Password must be different from the current password"

# Profile
PROFILE_UPDATED = "Profile was successfully updated"
EMAIL_REQUIRED = "Please complete your profile with email address"
EMAIL_INVALID = "Email is invalid"
EMAIL_TAKEN = "Email has already been taken"

# Two-factor enrollment
TWO_FACTOR_GLOBAL_REASON = "The global settings require you to enable Two-Factor Authentication for your account."
TWO_FACTOR_GROUP_REASON = (
    "The group settings for {groups} require you to enable Two-Factor Authentication for your account."
)
TWO_FACTOR_DEADLINE = " You need to do this before {deadline}."
INVALID_PIN = "Invalid pin code"
TWO_FACTOR_SKIP_DENIED = "Cannot skip two factor authentication setup"
TWO_FACTOR_ENABLED = "You have set up 2FA for your account! Save your backup codes before you proceed."
TWO_FACTOR_DISABLED = "Two-factor authentication has been disabled."
BACKUP_CODES_REGENERATED = "Your backup codes have been regenerated. Save them before you proceed."

# Terms
TERMS_REQUIRED = "You must accept the Terms of Service in order to access this site."
TERMS_ACCEPTED = "Terms of Service accepted."

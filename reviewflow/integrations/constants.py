# Central place for Google Business Profile constants; settings may override the URLs
GOOGLE_BUSINESS_API_URL = "https://mybusiness.googleapis.com/v4"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"

# Google rejects review replies longer than this
GOOGLE_REPLY_MAX_LENGTH = 4096

USER_AGENT = "ReviewFlow/1.0"

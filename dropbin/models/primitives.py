BlobId = str

# opaque admission capability presented by an uploader
Token = str

# seconds since the epoch
Timestamp = float

MimeType = str

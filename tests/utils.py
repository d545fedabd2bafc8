BUCKET_NAME = "test-bucket"
URL_PREFIX = f"https://storage.googleapis.com/{BUCKET_NAME}/"


def storage_url(key: str) -> str:
    return URL_PREFIX + key


def deleted_keys(bucket) -> list:
    return [call.args[0] for call in bucket.delete_blob.call_args_list]


def uploaded_keys(bucket) -> list:
    return [call.args[0] for call in bucket.blob.call_args_list]

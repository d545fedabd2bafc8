import requests
import json

url = "http://localhost:3001/api/admin/products"
form = {
    "name": "Debug Wire Pin",
    "description": "Created by the upload smoke check.",
    "productType": "other",
    "newProductType": "Wire Pin",
    "gstRate": "0.12",
    "isActive": "true",
    "dimensions[0][dimensionName]": "2mm x 150mm",
    "dimensions[0][basePrice]": "10",
    "dimensions[1][dimensionName]": "",
    "dimensions[1][basePrice]": "",
}
# 1x1 transparent PNG
pixel = bytes.fromhex(
    "89504e470d0a1a0a0000000d4948445200000001000000010806000000"
    "1f15c4890000000d49444154789c6360000002000154a24f5d0000000049454e44ae426082"
)
files = {"baseImage": ("debug pixel.png", pixel, "image/png")}

try:
    print(f"Sending POST request to {url}...")
    response = requests.post(url, data=form, files=files)
    print(f"Status Code: {response.status_code}")
    print("Response Body:")
    print(json.dumps(response.json(), indent=2))

    product_id = response.json().get("id")
    if response.ok and product_id:
        print(f"Cleaning up product {product_id}...")
        cleanup = requests.delete(f"{url}/{product_id}")
        print(f"Status Code: {cleanup.status_code}")
        print(cleanup.text)
except Exception as e:
    print(f"Error: {e}")

"""
GraphQL query strings for Shopify Admin API.
"""


# Query to fetch current prices of a single variant
PRODUCT_VARIANT_QUERY = '''
query productVariant($id: ID!) {
  productVariant(id: $id) {
    id
    title
    sku
    price
    compareAtPrice
    product {
      id
      title
    }
  }
}
'''


# Query to fetch a variant's metafields in one namespace
VARIANT_METAFIELDS_QUERY = '''
query variantMetafields($id: ID!, $namespace: String!) {
  productVariant(id: $id) {
    id
    metafields(first: 250, namespace: $namespace) {
      edges {
        node {
          namespace
          key
          value
        }
      }
    }
  }
}
'''

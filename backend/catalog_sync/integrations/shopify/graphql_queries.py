# GraphQL 文档（Admin API），只放字符串常量


SHOP_PING = """
{
  shop {
    name
    myshopifyDomain
    plan { displayName }
  }
}
""".strip()


# 申请 Bulk mutation 变量文件的 staged 上传目标
STAGED_UPLOADS_CREATE = """
mutation StagedUploadsCreate($input: [StagedUploadInput!]!) {
  stagedUploadsCreate(input: $input) {
    stagedTargets {
      url
      resourceUrl
      parameters { name value }
    }
    userErrors { field message }
  }
}
""".strip()


# 每行 JSONL 的 {"input": ...} 由服务端代入 $input
# variants(first: 20) 同时请求 nodes，结果里既可能内联也可能展开成子行
PRODUCT_SET_TEMPLATE = """
mutation productSet($input: ProductSetInput!) {
  productSet(synchronous: true, input: $input) {
    product {
      id
      title
      variants(first: 20) {
        nodes { id title sku }
      }
    }
    userErrors { code field message }
  }
}
""".strip()


BULK_OPERATION_RUN_MUTATION = """
mutation BulkOperationRunMutation($mutation: String!, $stagedUploadPath: String!) {
  bulkOperationRunMutation(mutation: $mutation, stagedUploadPath: $stagedUploadPath) {
    bulkOperation { id status url createdAt }
    userErrors { field message }
  }
}
""".strip()


CURRENT_BULK_MUTATION = """
query CurrentBulkMutation {
  currentBulkOperation(type: MUTATION) {
    id
    status
    errorCode
    createdAt
    completedAt
    objectCount
    fileSize
    url
    partialDataUrl
  }
}
""".strip()


# currentBulkOperation 已经被别的操作替换时，按 id 回查自己那一个
BULK_OPERATION_BY_ID = """
query BulkOperationById($id: ID!) {
  node(id: $id) {
    ... on BulkOperation {
      id
      status
      errorCode
      createdAt
      completedAt
      objectCount
      fileSize
      url
      partialDataUrl
    }
  }
}
""".strip()

import pandas as pd

# Two versions of the same sheet for trying out the comparison endpoints
v1 = pd.DataFrame({
    'id': [1, 2, 3, 4, 5],
    'name': ['Alice', 'Bob', 'Carol', 'Dan', 'Eve'],
    'amount': [100, 200, 300, 400, 500],
    'category': ['A', 'B', 'A', 'C', 'B']
})

v2 = v1.copy()
v2.loc[1, 'amount'] = 250
v2.loc[3, 'category'] = 'A'
v2 = v2.drop(index=4)
v2 = pd.concat([v2, pd.DataFrame([{'id': 6, 'name': 'Frank', 'amount': 600, 'category': 'C'}])])

v1.to_excel('test_data_v1.xlsx', index=False, sheet_name='Data')
v2.to_excel('test_data_v2.xlsx', index=False, sheet_name='Data')
print("Created test_data_v1.xlsx and test_data_v2.xlsx")
